"""Per-request inputs to the tracking pipeline, populated once at load time."""
from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, MutableMapping, Optional
from urllib.parse import urlsplit
from visit_tracker.tracking.params import parse_query

# Compact the session by shortening names
SESSION_KEYS = {
    "visit_id": "vid",
    "visit_time": "vt",
    "cookie_id": "cid",
    "user_agent_hash": "uh",
    "attribution_hash": "ah",
    "referer_hash": "rh",
}

COOKIE_MAX_AGE = 20 * 365 * 24 * 3600  # "permanent"


@dataclass
class RequestContext:
    """What the host request layer hands to a tracker.

    ``cookie_id`` comes from the cookie jar (browser) or a request parameter (API);
    ``visit_id``, ``user_agent``, ``referer`` and ``ingress_url`` are request
    parameters on the API protocol; on the browser protocol they come from headers
    and the request URL. ``session`` is the host's
    per-visitor session mapping.
    """
    method: str = "GET"
    path: str = "/"
    host: Optional[str] = None
    query_params: dict[str, str] = field(default_factory=dict)
    query_string: str = ""
    url: Optional[str] = None
    ingress_url: Optional[str] = None
    media_type: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    remote_ip: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    cookie_id: Optional[str] = None
    visit_id: Optional[str] = None
    session: MutableMapping[str, Any] = field(default_factory=dict)
    now: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        self.path = self.path or "/"
        self.query_string = (self.query_string or "").lstrip("?")
        if not self.query_params and self.query_string:
            self.query_params = parse_query(self.query_string)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RequestContext":
        parts = urlsplit(url)
        kwargs.setdefault("host", parts.hostname)
        kwargs.setdefault("path", parts.path or "/")
        kwargs.setdefault("query_string", parts.query)
        kwargs.setdefault("ingress_url", url)
        return cls(url=url, **kwargs)


@dataclass
class SessionState:
    """Visit bookkeeping carried between browser requests in the host session."""
    visit_id: Optional[str] = None
    visit_time: Optional[datetime] = None
    cookie_id: Optional[str] = None
    user_agent_hash: Optional[str] = None
    attribution_hash: Optional[str] = None
    referer_hash: Optional[str] = None

    @classmethod
    def load(cls, session: Mapping[str, Any] | None) -> "SessionState":
        if not session:
            return cls()
        values = {name: session.get(key) for name, key in SESSION_KEYS.items()}
        vt = values["visit_time"]
        if isinstance(vt, str):
            try:
                vt = datetime.fromisoformat(vt)
            except ValueError:
                vt = None
        values["visit_time"] = vt if isinstance(vt, datetime) else None
        return cls(**values)

    def store(self, session: MutableMapping[str, Any]):
        for name, key in SESSION_KEYS.items():
            value = getattr(self, name)
            if value is None:
                session.pop(key, None)
            elif isinstance(value, datetime):
                session[key] = value.isoformat()
            else:
                session[key] = value


@dataclass(frozen=True)
class CookieSpec:
    """The visitor cookie the transport layer should (re)issue."""
    name: str
    value: str
    secure: bool = False
    httponly: bool = True
    max_age: int = COOKIE_MAX_AGE
