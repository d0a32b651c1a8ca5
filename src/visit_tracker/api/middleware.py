from __future__ import annotations
import json
import logging
import uuid
from typing import Iterable
from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from visit_tracker.tracking.context import RequestContext
from visit_tracker.tracking.engine import TrackingEngine, get_engine
from visit_tracker.tracking.tracker import API_PATH, Tracker, tracker_for

logger = logging.getLogger(__name__)

# Identity the API protocol carries as request parameters
API_IDENTITY_PARAMS = ("cookie_id", "visit_id", "user_agent", "referer", "ingress_url")


def media_type_of(request: Request) -> str | None:
    """Body type when there is one, else the first type the client accepts."""
    content_type = request.headers.get("content-type")
    if content_type:
        return content_type.split(";")[0].strip() or None
    accept = request.headers.get("accept", "").split(",")[0].split(";")[0].strip()
    if not accept or accept == "*/*":
        return None
    return accept


def build_context(request: Request, cookie_name: str) -> RequestContext:
    params = dict(request.query_params)
    client = request.client
    common = dict(
        method=request.method,
        path=request.url.path,
        host=request.url.hostname,
        query_params=params,
        query_string=request.url.query,
        url=str(request.url),
        media_type=media_type_of(request),
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        remote_ip=client.host if client else None,
        session=request.scope.get("session", {}),
    )
    if API_PATH.match(request.url.path):
        return RequestContext(
            cookie_id=params.get("cookie_id"),
            visit_id=params.get("visit_id"),
            user_agent=params.get("user_agent"),
            referer=params.get("referer"),
            ingress_url=params.get("ingress_url"),
            **common,
        )
    return RequestContext(
        cookie_id=request.cookies.get(cookie_name),
        user_agent=request.headers.get("user-agent"),
        referer=request.headers.get("referer"),
        ingress_url=str(request.url),
        **common,
    )


class TrackingMiddleware(BaseHTTPMiddleware):
    """Runs the tracking pipeline around every request.

    The tracker is available to handlers as ``request.state.tracker``. Needs the
    session middleware outside it for the browser protocol.
    """

    def __init__(self, app, engine: TrackingEngine | None = None, exclude_paths: Iterable[str] = ("/health",)):
        super().__init__(app)
        self._engine = engine
        self.exclude_paths = frozenset(exclude_paths)

    @property
    def engine(self) -> TrackingEngine:
        return self._engine or get_engine()

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)
        engine = self.engine
        context = build_context(request, engine.settings.cookie_name)
        tracker = await run_in_threadpool(tracker_for, context, engine)
        await run_in_threadpool(tracker.track)
        request.state.tracker = tracker
        response = await call_next(request)
        tracker.status = response.status_code
        try:
            await run_in_threadpool(tracker.save)
        except Exception as exc:
            logger.error(json.dumps({
                "event": "tracking_save_failed",
                "tracker": tracker.type_name,
                "request_id": context.request_id,
                "path": context.path,
                "type": exc.__class__.__name__,
                "detail": str(exc),
            }))
        self._issue_cookie(tracker, response)
        return response

    @staticmethod
    def _issue_cookie(tracker: Tracker, response: Response):
        spec = tracker.cookie
        if spec is None:
            return
        response.set_cookie(
            spec.name,
            spec.value,
            max_age=spec.max_age,
            secure=spec.secure,
            httponly=spec.httponly,
            samesite="lax",
        )


def get_tracker(request: Request) -> Tracker | None:
    """FastAPI dependency for handlers that queue events or identify visitors."""
    return getattr(request.state, "tracker", None)
