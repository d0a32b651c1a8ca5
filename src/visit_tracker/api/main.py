from __future__ import annotations
import json
import logging
from typing import Optional
from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from visit_tracker.config import get_settings
from visit_tracker.infrastructure.db import create_all, healthcheck
from visit_tracker.api.middleware import TrackingMiddleware, get_tracker
from visit_tracker.tracking.engine import TrackingEngine
from visit_tracker.tracking.tracker import Tracker


def configure_logging():
    settings = get_settings()
    logger = logging.getLogger("visit_tracker")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())


class EventIn(BaseModel):
    event_type: str
    meta: dict = Field(default_factory=dict)


class IdentifyIn(BaseModel):
    owner: str


def create_app(engine: Optional[TrackingEngine] = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Visit Tracker", version="0.1.0")
    # Starlette runs the last added middleware first; the session must load before tracking
    app.add_middleware(TrackingMiddleware, engine=engine)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        https_only=settings.secure_cookie,
    )

    @app.on_event("startup")
    def startup():
        configure_logging()
        if settings.migrate_on_start:
            try:
                create_all()
            except Exception as exc:
                logging.getLogger("visit_tracker").warning(
                    json.dumps({"event": "migration_failed", "detail": str(exc)})
                )

    @app.get("/health")
    def health():
        return {"db": healthcheck(), "status": "ok"}

    @app.post("/api/v1/events")
    def queue_event(event: EventIn, tracker: Optional[Tracker] = Depends(get_tracker)):
        queued = tracker.queue_event(event.event_type, event.meta) if tracker else None
        return {"queued": queued is not None, "visit_id": tracker.visit_id if tracker else None}

    @app.post("/api/v1/identify")
    def identify(body: IdentifyIn, tracker: Optional[Tracker] = Depends(get_tracker)):
        if tracker is None or not tracker.tracking:
            return {"identified": False}
        tracker.identify(body.owner)
        return {"identified": True, "visit_id": tracker.visit_id}

    return app
