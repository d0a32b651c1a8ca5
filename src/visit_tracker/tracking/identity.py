"""Anonymous visitor identity: cookie, user agent, referer, owner.

Every value here is interned through an InterningStore so that repeated raw
values share one row.
"""
from __future__ import annotations
import logging
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit
from visit_tracker.config import Settings, get_settings
from visit_tracker.errors import InvalidIdentity, MalformedReferer
from visit_tracker.infrastructure.interning import InterningStore
from visit_tracker.models.tables import Attribution, Cookie, Domain, Owner, Ownership, Path, QueryString, Referer, UserAgent
from visit_tracker.tracking.attribution import AttributionResolver
from visit_tracker.tracking.params import parse_query, to_query

logger = logging.getLogger(__name__)

UUID_REGEX = re.compile(r"\A[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\Z")
UUID_REGEX_V4 = re.compile(r"\A[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89aAbB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\Z")
WWW_PREFIX = re.compile(r"\Awww\.", re.IGNORECASE)


class CookieMode(Enum):
    BROWSER = "browser"  # mint a fresh cookie when missing or unknown
    API = "api"          # caller generated the id; intern it
    STRICT = "strict"    # only existing, well-formed cookies


@dataclass(frozen=True)
class RefererURI:
    host: str
    path: str
    query: dict = field(default_factory=dict)


def is_valid_cookie(value: Optional[str]) -> bool:
    return bool(value) and UUID_REGEX_V4.match(value) is not None


def is_valid_visit_id(value: Optional[str]) -> bool:
    return bool(value) and UUID_REGEX.match(value) is not None


def normalize_host(host: Optional[str]) -> Optional[str]:
    if not host:
        return None
    return WWW_PREFIX.sub("", host.strip().lower().rstrip(".")) or None


class IdentityResolver:
    def __init__(self, settings: Settings | None = None, attribution: AttributionResolver | None = None):
        self.settings = settings or get_settings()
        s = self.settings
        attempts = s.intern_max_attempts
        self.attribution = attribution or AttributionResolver(
            InterningStore(Attribution, "digest", cache_size=s.attribution_cache_size, max_attempts=attempts)
        )
        self.cookies = InterningStore(Cookie, "cookie_id", cache_size=s.cookie_cache_size, max_attempts=attempts)
        self.user_agents = InterningStore(UserAgent, "user_agent", cache_size=s.user_agent_cache_size, max_attempts=attempts)
        self.domains = InterningStore(Domain, "domain", cache_size=s.domain_cache_size, max_attempts=attempts)
        self.paths = InterningStore(Path, "path", cache_size=s.path_cache_size, max_attempts=attempts)
        self.query_strings = InterningStore(QueryString, "query_string", cache_size=s.query_string_cache_size, max_attempts=attempts)
        self.referers = InterningStore(
            Referer,
            ("domain_id", "path_id", "query_string_id", "attribution_id"),
            cache_size=s.referer_cache_size,
            max_attempts=attempts,
        )
        self.owners = InterningStore(Owner, "owner", cache_size=s.owner_cache_size, max_attempts=attempts)
        self.ownerships = InterningStore(Ownership, ("cookie_id", "owner_id"), cache_size=s.owner_cache_size, max_attempts=attempts)

    # Cookies

    def check_cookie(self, candidate: Optional[str]) -> str:
        if not is_valid_cookie(candidate):
            raise InvalidIdentity(f"cookie {candidate!r} is not a UUIDv4")
        return candidate.lower()

    def ensure_cookie(self, candidate: Optional[str], mode: CookieMode = CookieMode.BROWSER) -> Optional[str]:
        """Return a usable cookie id for ``candidate``.

        Malformed ids are treated as absent. STRICT mode returns None instead of
        minting; API mode trusts and interns a well-formed id it has not seen.
        """
        try:
            cookie_id = self.check_cookie(candidate)
        except InvalidIdentity as exc:
            if candidate:
                logger.debug("discarding cookie: %s", exc)
            cookie_id = None
        if cookie_id is not None:
            if mode is CookieMode.API:
                return self.cookies.find_or_create(cookie_id).cookie_id
            if self.cookies.find(cookie_id) is not None:
                return cookie_id
        if mode is CookieMode.STRICT:
            return None
        return self.cookies.find_or_create(str(uuid.uuid4())).cookie_id

    # User agents

    def user_agent_string(self, raw: Optional[str]) -> str:
        if raw is None or not raw.strip():
            return self.settings.blank_user_agent_string
        return raw

    def user_agent(self, raw: Optional[str]) -> UserAgent:
        return self.user_agents.find_or_create(self.user_agent_string(raw))

    def resolve_user_agent(self, raw: Optional[str]) -> int:
        return self.user_agent(raw).id

    def find_user_agent(self, raw: Optional[str]) -> Optional[UserAgent]:
        return self.user_agents.find(self.user_agent_string(raw))

    # Referers

    def _parse_referer(self, raw: str) -> RefererURI:
        value = raw.strip()
        if WWW_PREFIX.match(value):
            # schemeless "www.example.com/..." would otherwise parse as a path
            value = "//" + value
        try:
            parts = urlsplit(value)
            host = parts.hostname
        except ValueError as exc:
            raise MalformedReferer(f"unparsable referer {raw!r}: {exc}") from exc
        host = normalize_host(host)
        if not host:
            raise MalformedReferer(f"referer {raw!r} has no host")
        return RefererURI(host=host, path=parts.path or "/", query=parse_query(parts.query))

    def parse_referer(self, raw: Optional[str]) -> Optional[RefererURI]:
        if raw is None or not raw.strip():
            return None
        try:
            return self._parse_referer(raw)
        except MalformedReferer as exc:
            logger.debug("ignoring referer: %s", exc)
            return None

    def referer(self, raw: Optional[str]) -> Optional[Referer]:
        uri = self.parse_referer(raw)
        if uri is None:
            return None
        extractor = self.attribution.extractor
        attribution = self.attribution.resolve_tuple(extractor.extract(uri.query))
        residual = to_query(extractor.untracked_params(uri.query))
        return self.referers.find_or_create({
            "domain_id": self.domains.find_or_create(uri.host).id,
            "path_id": self.paths.find_or_create(uri.path).id,
            "query_string_id": self.query_strings.find_or_create(residual).id,
            "attribution_id": attribution.id,
        })

    def domain(self, host: Optional[str]) -> Optional[Domain]:
        host = normalize_host(host)
        if host is None:
            return None
        return self.domains.find_or_create(host)

    # Owners

    def owner(self, identifier: str) -> Owner:
        if not identifier or not str(identifier).strip():
            raise ValueError("owner identifier must be non-empty")
        return self.owners.find_or_create(str(identifier).strip())

    def ownership(self, cookie_id: str, owner_id: int) -> Ownership:
        return self.ownerships.find_or_create({"cookie_id": cookie_id, "owner_id": owner_id})
