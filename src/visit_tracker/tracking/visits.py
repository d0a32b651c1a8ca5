"""Visit lifecycle.

A visit moves through four states within one request:

    ABSENT       no visit id, or the id does not resolve
    PROVISIONAL  an id was supplied but no row exists yet
    ACTIVE       the row exists; attribution or referer may still be empty
    COMPLETE     attribution and referer are both set

Two entry protocols share this module. The browser protocol decides from a list of
configured predicates whether to start a new visit. The API protocol receives an
explicit visit id and may race a browser call (or another API call) for the same
id; it goes through ``attach``, which finds or creates the row and then backfills
empty fields with conditional single-statement updates. A field that is already
set is never overwritten, so arrival order does not matter and replays are no-ops.
"""
from __future__ import annotations
import base64
import hashlib
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional
from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from visit_tracker.config import Settings, get_settings, parse_new_visit_reasons
from visit_tracker.errors import UpstreamUnavailable
from visit_tracker.infrastructure import db
from visit_tracker.infrastructure.interning import InterningStore
from visit_tracker.models.tables import Attribution, Visit
from visit_tracker.tracking.attribution import EMPTY_DIGEST
from visit_tracker.tracking.context import SessionState

logger = logging.getLogger(__name__)

VISITS_CREATED = Counter('visits_created_total', 'Visits created', ['entry'])
VISIT_BACKFILLS = Counter('visit_backfills_total', 'Empty visit fields backfilled', ['field'])
NEW_VISIT_REASON_HITS = Counter('new_visit_reasons_total', 'New visit predicates that fired', ['reason'])


class VisitState(Enum):
    ABSENT = "absent"
    PROVISIONAL = "provisional"
    ACTIVE = "active"
    COMPLETE = "complete"


def fingerprint(value: Optional[str]) -> str:
    return base64.b64encode(hashlib.sha256((value or "").encode()).digest()).decode()


@dataclass(frozen=True)
class Observation:
    """What the current browser request looks like, for the new-visit predicates.

    attribution_hash is None when the request carries no attribution and
    referer_hash is None unless the referer is external.
    """
    cookie_id: Optional[str]
    user_agent_hash: Optional[str]
    attribution_hash: Optional[str]
    referer_hash: Optional[str]
    observed_at: datetime


Predicate = Callable[[SessionState, Observation, timedelta], bool]


def visit_stale(previous: SessionState, current: Observation, timeout: timedelta) -> bool:
    if previous.visit_time is None:
        return False
    return current.observed_at - previous.visit_time > timeout


def cookie_changed(previous: SessionState, current: Observation, timeout: timedelta) -> bool:
    return previous.cookie_id is not None and previous.cookie_id != current.cookie_id


def user_agent_changed(previous: SessionState, current: Observation, timeout: timedelta) -> bool:
    return previous.user_agent_hash != current.user_agent_hash


def attribution_changed(previous: SessionState, current: Observation, timeout: timedelta) -> bool:
    return current.attribution_hash is not None and current.attribution_hash != previous.attribution_hash


def referer_changed(previous: SessionState, current: Observation, timeout: timedelta) -> bool:
    return current.referer_hash is not None and current.referer_hash != previous.referer_hash


NEW_VISIT_REASONS: dict[str, Predicate] = {
    "visit_stale": visit_stale,
    "cookie_changed": cookie_changed,
    "user_agent_changed": user_agent_changed,
    "attribution_changed": attribution_changed,
    "referer_changed": referer_changed,
}


@dataclass(frozen=True)
class VisitDraft:
    """Field values a request can contribute to a visit row."""
    cookie_id: str
    user_agent_id: int
    attribution_id: int
    attribution_empty: bool = True
    referer_id: Optional[int] = None
    ip_address: Optional[str] = None
    domain_id: Optional[int] = None
    raw_query_string: Optional[str] = None
    unaltered_ingress_url: Optional[str] = None
    owner_id: Optional[int] = None

    def __post_init__(self):
        if not self.cookie_id:
            raise ValueError("visit draft requires a cookie_id")
        if self.user_agent_id is None or self.attribution_id is None:
            raise ValueError("visit draft requires user_agent_id and attribution_id")
        # empty strings count as "not supplied"
        for name in ("raw_query_string", "unaltered_ingress_url", "ip_address"):
            if getattr(self, name) == "":
                object.__setattr__(self, name, None)

    def row_values(self) -> dict:
        values = asdict(self)
        values.pop("attribution_empty")
        return values


@dataclass
class VisitResolution:
    visit: Visit
    state: VisitState
    previous_state: VisitState
    created: bool
    backfilled: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()

    @property
    def visit_id(self) -> str:
        return self.visit.visit_id


class VisitSession:
    def __init__(
        self,
        settings: Settings | None = None,
        reasons: Iterable[str] | None = None,
        timeout: timedelta | None = None,
        store: InterningStore[Visit] | None = None,
        session_factory: Callable[[], Session] | None = None,
    ):
        settings = settings or get_settings()
        self.reasons = list(reasons) if reasons is not None else parse_new_visit_reasons(settings.new_visit_reasons)
        unknown = [r for r in self.reasons if r not in NEW_VISIT_REASONS]
        if unknown:
            raise ValueError(f"unknown new visit reasons: {unknown}; known: {sorted(NEW_VISIT_REASONS)}")
        self.timeout = timeout if timeout is not None else settings.visit_timeout
        # Visits are mutable (backfills), so never cached
        self.store = store or InterningStore(Visit, "visit_id", cache_size=0, max_attempts=settings.intern_max_attempts)
        self._session_factory = session_factory or db.new_session

    def reasons_for(self, previous: SessionState, current: Observation) -> list[str]:
        """Names of the reasons to start a new visit; empty means reuse the current one."""
        if not previous.visit_id:
            fired = ["no_visit"]
        else:
            fired = [name for name in self.reasons if NEW_VISIT_REASONS[name](previous, current, self.timeout)]
        for name in fired:
            NEW_VISIT_REASON_HITS.labels(reason=name).inc()
        logger.debug("new visit reasons configured=%s fired=%s", self.reasons, fired)
        return fired

    def find(self, visit_id: Optional[str]) -> Optional[Visit]:
        if not visit_id:
            return None
        return self.store.find(visit_id)

    def state_of(self, visit: Optional[Visit]) -> VisitState:
        if visit is None:
            return VisitState.ABSENT
        if visit.referer_id is None or visit.attribution_id is None:
            return VisitState.ACTIVE
        with self._session_factory() as session:
            try:
                digest = session.scalar(select(Attribution.digest).where(Attribution.id == visit.attribution_id))
            except SQLAlchemyError as exc:
                raise UpstreamUnavailable(f"visit state lookup failed: {exc}") from exc
        return VisitState.COMPLETE if digest and digest != EMPTY_DIGEST else VisitState.ACTIVE

    def start(self, draft: VisitDraft, reasons: Iterable[str] = ()) -> VisitResolution:
        """Create a brand new visit with every field the draft carries."""
        visit_id = str(uuid.uuid4())
        visit, _ = self.store.get_or_create(visit_id, defaults={"id": visit_id, **draft.row_values()})
        VISITS_CREATED.labels(entry="start").inc()
        logger.debug("started visit %s", visit_id)
        return VisitResolution(
            visit=visit,
            state=self.state_of(visit),
            previous_state=VisitState.ABSENT,
            created=True,
            reasons=tuple(reasons),
        )

    def attach(self, visit_id: str, draft: VisitDraft) -> VisitResolution:
        """Find or create the visit ``visit_id`` and backfill whatever it is missing.

        When another request already created the row it is authoritative: populated
        fields are kept and only empty ones are filled from ``draft``.
        """
        visit, created = self.store.get_or_create(visit_id, defaults={"id": visit_id, **draft.row_values()})
        if created:
            VISITS_CREATED.labels(entry="attach").inc()
            logger.debug("visit %s created on attach", visit_id)
            return VisitResolution(
                visit=visit,
                state=self.state_of(visit),
                previous_state=VisitState.PROVISIONAL,
                created=True,
            )
        previous = self.state_of(visit)
        backfilled = self.reconcile(visit_id, draft)
        if backfilled:
            visit = self.find(visit_id) or visit
        return VisitResolution(
            visit=visit,
            state=self.state_of(visit) if backfilled else previous,
            previous_state=previous,
            created=False,
            backfilled=tuple(backfilled),
        )

    def reconcile(self, visit_id: str, draft: VisitDraft) -> list[str]:
        """Fill empty fields of an existing visit from ``draft``; returns the fields set.

        Each backfill is one UPDATE guarded by "field is still empty", so a
        concurrent writer that got there first wins and a replay changes nothing.
        """
        empty_attribution = select(Attribution.id).where(Attribution.digest == EMPTY_DIGEST)
        candidates = []
        if draft.raw_query_string:
            candidates.append(("raw_query_string",
                               or_(Visit.raw_query_string.is_(None), Visit.raw_query_string == ""),
                               draft.raw_query_string))
        if draft.unaltered_ingress_url:
            candidates.append(("unaltered_ingress_url",
                               or_(Visit.unaltered_ingress_url.is_(None), Visit.unaltered_ingress_url == ""),
                               draft.unaltered_ingress_url))
        if not draft.attribution_empty:
            candidates.append(("attribution_id",
                               or_(Visit.attribution_id.is_(None), Visit.attribution_id.in_(empty_attribution)),
                               draft.attribution_id))
        if draft.referer_id is not None:
            candidates.append(("referer_id", Visit.referer_id.is_(None), draft.referer_id))
        if not candidates:
            return []
        backfilled: list[str] = []
        with self._session_factory() as session:
            try:
                for field_name, still_empty, value in candidates:
                    stmt = (
                        update(Visit)
                        .where(Visit.visit_id == visit_id, still_empty)
                        .values({field_name: value})
                        .execution_options(synchronize_session=False)
                    )
                    if session.execute(stmt).rowcount:
                        backfilled.append(field_name)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise UpstreamUnavailable(f"visit {visit_id} reconcile failed: {exc}") from exc
        for field_name in backfilled:
            VISIT_BACKFILLS.labels(field=field_name).inc()
        if backfilled:
            logger.debug("visit %s backfilled %s", visit_id, backfilled)
        return backfilled

    def set_owner(self, visit_id: str, owner_id: int) -> bool:
        with self._session_factory() as session:
            try:
                result = session.execute(
                    update(Visit)
                    .where(Visit.visit_id == visit_id)
                    .values(owner_id=owner_id)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise UpstreamUnavailable(f"visit {visit_id} owner update failed: {exc}") from exc
        return bool(result.rowcount)
