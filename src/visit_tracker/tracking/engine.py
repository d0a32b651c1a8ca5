from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from visit_tracker.config import Settings, get_settings
from visit_tracker.infrastructure.interning import InterningStore
from visit_tracker.models.tables import Attribution
from visit_tracker.tracking.attribution import AttributionResolver
from visit_tracker.tracking.identity import IdentityResolver
from visit_tracker.tracking.params import ParamExtractor, extractor
from visit_tracker.tracking.visits import VisitSession


@dataclass
class TrackingEngine:
    """Process-wide resolvers; their interning caches are shared by every request."""
    settings: Settings
    extractor: ParamExtractor
    attribution: AttributionResolver
    identity: IdentityResolver
    visits: VisitSession

    @classmethod
    def build(cls, settings: Settings | None = None) -> "TrackingEngine":
        settings = settings or get_settings()
        attribution = AttributionResolver(
            InterningStore(
                Attribution,
                "digest",
                cache_size=settings.attribution_cache_size,
                max_attempts=settings.intern_max_attempts,
            ),
            extractor,
        )
        return cls(
            settings=settings,
            extractor=extractor,
            attribution=attribution,
            identity=IdentityResolver(settings, attribution),
            visits=VisitSession(settings),
        )


@lru_cache
def get_engine() -> TrackingEngine:
    return TrackingEngine.build()


def reset_engine():
    """Drop the shared engine and its caches (tests, settings changes)."""
    get_engine.cache_clear()
