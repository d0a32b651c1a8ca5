from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from visit_tracker.infrastructure.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Cookie(Base):
    __tablename__ = "cookies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cookie_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class UserAgent(Base):
    """Distinct user agent strings.

    user_agent_type classifies known agents: noop (bots, monitors), api, user.
    Unclassified agents leave it NULL.
    """
    __tablename__ = "user_agents"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_agent: Mapped[str] = mapped_column(Text, unique=True)
    user_agent_type: Mapped[str | None] = mapped_column(String(16), default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Domain(Base):
    __tablename__ = "domains"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True)


class Path(Base):
    __tablename__ = "paths"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(Text, unique=True)


class QueryString(Base):
    __tablename__ = "query_strings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_string: Mapped[str] = mapped_column(Text, unique=True)


class Attribution(Base):
    """One row per distinct attribution tuple, keyed by its content digest.

    The empty tuple is a regular row with every dimension NULL.
    """
    __tablename__ = "attributions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    digest: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    ad_group: Mapped[str | None] = mapped_column(String(255), default=None)
    ad_type: Mapped[str | None] = mapped_column(String(255), default=None)
    affiliate: Mapped[str | None] = mapped_column(String(255), default=None)
    app: Mapped[str | None] = mapped_column(String(255), default=None)
    bid_match_type: Mapped[str | None] = mapped_column(String(255), default=None)
    brand: Mapped[str | None] = mapped_column(String(255), default=None)
    campaign: Mapped[str | None] = mapped_column(String(255), default=None)
    campaign_identifier: Mapped[str | None] = mapped_column(String(255), default=None)
    content: Mapped[str | None] = mapped_column(String(255), default=None)
    content_identifier: Mapped[str | None] = mapped_column(String(255), default=None)
    creative: Mapped[str | None] = mapped_column(String(255), default=None)
    device_type: Mapped[str | None] = mapped_column(String(255), default=None)
    experiment: Mapped[str | None] = mapped_column(String(255), default=None)
    keyword: Mapped[str | None] = mapped_column(String(255), default=None)
    match_type: Mapped[str | None] = mapped_column(String(255), default=None)
    medium: Mapped[str | None] = mapped_column(String(255), default=None)
    medium_identifier: Mapped[str | None] = mapped_column(String(255), default=None)
    network: Mapped[str | None] = mapped_column(String(255), default=None)
    placement: Mapped[str | None] = mapped_column(String(255), default=None)
    position: Mapped[str | None] = mapped_column(String(255), default=None)
    search_term: Mapped[str | None] = mapped_column(String(255), default=None)
    source: Mapped[str | None] = mapped_column(String(255), default=None)
    subsource: Mapped[str | None] = mapped_column(String(255), default=None)
    target: Mapped[str | None] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def values(self) -> dict[str, str]:
        """Non-empty dimension values."""
        out: dict[str, str] = {}
        for col in self.__table__.columns.keys():
            if col in ("id", "digest", "created_at"):
                continue
            v = getattr(self, col)
            if v:
                out[col] = v
        return out

    @property
    def is_empty(self) -> bool:
        return not self.values()


class Referer(Base):
    __tablename__ = "referers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(ForeignKey("domains.id"))
    path_id: Mapped[int] = mapped_column(ForeignKey("paths.id"))
    query_string_id: Mapped[int] = mapped_column(ForeignKey("query_strings.id"))
    attribution_id: Mapped[int] = mapped_column(ForeignKey("attributions.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    __table_args__ = (
        UniqueConstraint("domain_id", "path_id", "query_string_id", "attribution_id", name="uq_referer_composite"),
    )


class Owner(Base):
    __tablename__ = "owners"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(255), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Ownership(Base):
    __tablename__ = "ownerships"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cookie_id: Mapped[str] = mapped_column(ForeignKey("cookies.cookie_id"), index=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("owners.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    __table_args__ = (
        UniqueConstraint("cookie_id", "owner_id", name="uq_ownership_cookie_owner"),
    )


class Visit(Base):
    __tablename__ = "visits"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    visit_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    cookie_id: Mapped[str] = mapped_column(ForeignKey("cookies.cookie_id"), index=True)
    attribution_id: Mapped[int] = mapped_column(ForeignKey("attributions.id"), index=True)
    user_agent_id: Mapped[int] = mapped_column(ForeignKey("user_agents.id"))
    referer_id: Mapped[int | None] = mapped_column(ForeignKey("referers.id"), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)
    domain_id: Mapped[int | None] = mapped_column(ForeignKey("domains.id"), default=None)
    raw_query_string: Mapped[str | None] = mapped_column(Text, default=None)
    unaltered_ingress_url: Mapped[str | None] = mapped_column(Text, default=None)
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("owners.id"), default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class Pageview(Base):
    __tablename__ = "pageviews"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    visit_id: Mapped[str] = mapped_column(ForeignKey("visits.visit_id"), index=True)
    path: Mapped[str] = mapped_column(Text)
    http_method: Mapped[str] = mapped_column(String(16))
    mime_type: Mapped[str | None] = mapped_column(String(255), default=None)
    query_string: Mapped[str | None] = mapped_column(Text, default=None)
    request_id: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    click_id: Mapped[str | None] = mapped_column(String(255), default=None)
    pixel_cookie_id: Mapped[str | None] = mapped_column(String(255), default=None)
    http_status: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, default=None)


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    visit_id: Mapped[str] = mapped_column(ForeignKey("visits.visit_id"), index=True)
    pageview_id: Mapped[int | None] = mapped_column(ForeignKey("pageviews.id"), default=None, index=True)
    event_type: Mapped[str] = mapped_column(String(128), index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    request_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_event_visit_type", "visit_id", "event_type"),
    )
