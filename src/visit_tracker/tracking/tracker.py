"""Per-request tracking pipeline.

``tracker_for`` picks the tracker for a request; the host then calls ``track()``
before handling it and ``save()`` once the response status is known. ``track()``
never raises: tracking is best effort and must not fail the host request.
"""
from __future__ import annotations
import json
import logging
import re
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional
from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from visit_tracker.errors import TrackingError, UpstreamUnavailable
from visit_tracker.infrastructure import db
from visit_tracker.models.tables import Event, Ownership, Pageview
from visit_tracker.tracking.attribution import tuple_digest
from visit_tracker.tracking.context import CookieSpec, RequestContext, SessionState
from visit_tracker.tracking.engine import TrackingEngine, get_engine
from visit_tracker.tracking.identity import CookieMode, is_valid_visit_id, normalize_host
from visit_tracker.tracking.params import to_query
from visit_tracker.tracking.visits import Observation, VisitDraft, VisitResolution, fingerprint

logger = logging.getLogger(__name__)

TRACKING_FAILURES = Counter('tracking_failures_total', 'Tracking failures caught at the pipeline boundary', ['tracker'])
PAGEVIEWS_RECORDED = Counter('pageviews_recorded_total', 'Pageviews recorded', ['tracker'])
EVENTS_RECORDED = Counter('tracking_events_recorded_total', 'Queued events persisted', ['tracker'])

# Versioned APIs serve the frontend and carry identity in parameters
API_PATH = re.compile(r"^/api/v")


class Tracker:
    type_name = "base"

    def __init__(self, context: RequestContext, engine: TrackingEngine | None = None):
        if type(self) is Tracker:
            raise NotImplementedError("You must subclass Tracker")
        self.context = context
        self.engine = engine or get_engine()
        self.settings = self.engine.settings
        self.events: list[Event] = []
        self.status: Optional[int] = None
        self.cookie_id: Optional[str] = None
        self.visit_id: Optional[str] = None
        self.resolution: Optional[VisitResolution] = None
        self.pageview: Optional[Pageview] = None
        self.cookie: Optional[CookieSpec] = None
        self._started = time.time()
        self.tracking_params = self.engine.extractor.extract_tracking(context.query_params)
        self.attribution_params = self.engine.extractor.extract(context.query_params)

    @property
    def tracking(self) -> bool:
        return self.visit_id is not None

    @property
    def visit(self):
        return self.resolution.visit if self.resolution else None

    def track(self) -> None:
        try:
            self._track()
        except Exception as exc:
            TRACKING_FAILURES.labels(tracker=self.type_name).inc()
            logger.error(json.dumps({
                "event": "tracking_failed",
                "tracker": self.type_name,
                "request_id": self.context.request_id,
                "path": self.context.path,
                "type": exc.__class__.__name__,
                "detail": str(exc),
            }))

    def _track(self) -> None:
        raise NotImplementedError("You must subclass Tracker")

    def queue_event(self, event_type: str, meta: dict[str, Any] | None = None) -> Optional[Event]:
        if not self.tracking:
            return None
        event = Event(
            visit_id=self.visit_id,
            event_type=event_type,
            meta=meta or {},
            request_id=self.context.request_id,
        )
        self.events.append(event)
        return event

    def record_pageview(self, method: str | None = None, path: str | None = None) -> Optional[Pageview]:
        """Persist this request as a pageview of the current visit.

        ``method``/``path`` override the live request's values when given. Returns
        None when tracking could not attach a visit.
        """
        if not self.tracking:
            logger.debug("no visit for request %s, skipping pageview", self.context.request_id)
            return None
        if self.pageview is not None:
            # once per request
            return self.pageview
        now = datetime.utcnow()
        untracked = self.engine.extractor.untracked_params(self.context.query_params)
        pageview = Pageview(
            path=path or self.context.path,
            http_method=(method or self.context.method).upper(),
            mime_type=self.context.media_type,
            query_string=to_query(untracked),
            request_id=self.context.request_id,
            click_id=self.tracking_params.get("click_id"),
            pixel_cookie_id=self.tracking_params.get("pixel_cookie_id"),
            http_status=self.status,
            visit_id=self.visit_id,
            created_at=now,
            response_time_ms=(time.time() - self._started) * 1000,
        )
        with db.new_session() as session:
            try:
                session.add(pageview)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise UpstreamUnavailable(f"pageview insert failed: {exc}") from exc
        PAGEVIEWS_RECORDED.labels(tracker=self.type_name).inc()
        self.pageview = pageview
        return pageview

    def save(self) -> Optional[Pageview]:
        """Record the pageview, then every queued event against it."""
        pageview = self.pageview or self.record_pageview()
        if pageview is None or not self.events:
            return pageview
        events, self.events = self.events, []
        with db.new_session() as session:
            try:
                for event in events:
                    event.pageview_id = pageview.id
                session.add_all(events)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise UpstreamUnavailable(f"event insert failed: {exc}") from exc
        EVENTS_RECORDED.labels(tracker=self.type_name).inc(len(events))
        return pageview

    def identify(self, identifier: str) -> Ownership:
        """Attach an owner to the current visit and link it to the cookie."""
        if not self.tracking or not self.cookie_id:
            raise TrackingError("cannot identify a request without a visit")
        identity = self.engine.identity
        owner = identity.owner(identifier)
        self.engine.visits.set_owner(self.visit_id, owner.id)
        return identity.ownership(self.cookie_id, owner.id)

    # Shared resolution steps

    @property
    def raw_user_agent(self) -> Optional[str]:
        return self.context.user_agent

    @property
    def raw_referer(self) -> Optional[str]:
        return self.context.referer

    def has_attribution(self) -> bool:
        return any(self.attribution_params.values())

    def external_referer(self) -> bool:
        uri = self.engine.identity.parse_referer(self.raw_referer)
        return uri is not None and uri.host != normalize_host(self.context.host)

    def build_draft(self, with_referer: bool = True) -> VisitDraft:
        identity = self.engine.identity
        attribution = self.engine.attribution.resolve_tuple(self.attribution_params)
        referer = identity.referer(self.raw_referer) if with_referer else None
        domain = identity.domain(self.context.host)
        return VisitDraft(
            cookie_id=self.cookie_id,
            user_agent_id=identity.resolve_user_agent(self.raw_user_agent),
            attribution_id=attribution.id,
            attribution_empty=attribution.is_empty,
            referer_id=referer.id if referer else None,
            ip_address=self.context.remote_ip,
            domain_id=domain.id if domain else None,
            raw_query_string=self.context.query_string,
            unaltered_ingress_url=self.context.ingress_url,
        )

    def _adopt(self, resolution: VisitResolution):
        self.resolution = resolution
        self.visit_id = resolution.visit_id
        for event in self.events:
            event.visit_id = self.visit_id


class BrowserTracker(Tracker):
    """Requests from a browser: cookie jar identity, visit state in the host session."""
    type_name = "user"

    def _track(self) -> None:
        visits = self.engine.visits
        previous = SessionState.load(self.context.session)
        candidate = self.context.cookie_id
        self.cookie_id = self.engine.identity.ensure_cookie(candidate, CookieMode.BROWSER)
        self.cookie = CookieSpec(
            name=self.settings.cookie_name,
            value=self.cookie_id,
            secure=self.settings.secure_cookie,
        )

        visit_id = previous.visit_id if is_valid_visit_id(previous.visit_id) else None
        if candidate and candidate.lower() != self.cookie_id:
            # An invalid or unknown cookie invalidates the visit it came with
            visit_id = None
        if visit_id is not None and visits.find(visit_id) is None:
            # A session visit that no longer resolves is absent, not provisional
            visit_id = None

        external = self.external_referer()
        ua_hash = fingerprint(self.engine.identity.user_agent_string(self.raw_user_agent))
        observation = Observation(
            cookie_id=self.cookie_id,
            user_agent_hash=ua_hash,
            attribution_hash=tuple_digest(self.attribution_params) if self.has_attribution() else None,
            referer_hash=fingerprint(self.raw_referer) if external else None,
            observed_at=self.context.now,
        )
        reasons = visits.reasons_for(replace(previous, visit_id=visit_id), observation)

        # Navigation within the site is not a referer
        draft = self.build_draft(with_referer=external)
        if reasons:
            resolution = visits.start(draft, reasons)
        else:
            # Reuse; backfills anything the visit is still missing
            resolution = visits.attach(visit_id, draft)
        self._adopt(resolution)

        SessionState(
            visit_id=self.visit_id,
            visit_time=self.context.now,
            cookie_id=self.cookie_id,
            user_agent_hash=ua_hash,
            attribution_hash=observation.attribution_hash or previous.attribution_hash,
            referer_hash=observation.referer_hash or previous.referer_hash,
        ).store(self.context.session)


class ApiTracker(Tracker):
    """Server-to-server calls: cookie, visit, user agent and referer arrive as parameters.

    The caller generated the visit id, and other calls for the same visit may be in
    flight concurrently, so the visit is attached rather than created.
    """
    type_name = "api"

    def _track(self) -> None:
        candidate = self.context.cookie_id
        self.cookie_id = self.engine.identity.ensure_cookie(candidate, CookieMode.API)
        visit_id = self.context.visit_id if is_valid_visit_id(self.context.visit_id) else None
        if candidate and candidate.lower() != self.cookie_id:
            visit_id = None

        draft = self.build_draft()
        if visit_id is None:
            resolution = self.engine.visits.start(draft, ("no_visit",))
        else:
            resolution = self.engine.visits.attach(visit_id, draft)
        self._adopt(resolution)


class NoopTracker(Tracker):
    """Tracking disabled, or a user agent known not to be worth tracking."""
    type_name = "noop"

    def _track(self) -> None:
        return None

    def record_pageview(self, method: str | None = None, path: str | None = None) -> Optional[Pageview]:
        return None

    def identify(self, identifier: str) -> None:
        return None


TRACKERS: dict[str, type[Tracker]] = {
    "user": BrowserTracker,
    "api": ApiTracker,
    "noop": NoopTracker,
}


def tracker_for(context: RequestContext, engine: TrackingEngine | None = None) -> Tracker:
    engine = engine or get_engine()
    if not engine.settings.enabled:
        return NoopTracker(context, engine)
    kind = None
    try:
        user_agent = engine.identity.find_user_agent(context.user_agent)
        kind = user_agent.user_agent_type if user_agent else None
    except TrackingError as exc:
        logger.warning(json.dumps({"event": "user_agent_lookup_failed", "detail": str(exc)}))
    kind = kind or "user"
    # Tracking parameters always get tracked
    if engine.extractor.has_tracking(context.query_params):
        kind = "user"
    if API_PATH.match(context.path):
        kind = "api"
    return TRACKERS.get(kind, BrowserTracker)(context, engine)
