"""Error taxonomy for the tracking engine.

Only ``ConflictExhausted`` and ``UpstreamUnavailable`` ever leave the engine;
``InvalidIdentity`` and ``MalformedReferer`` are recovered where they are raised
by treating the value as absent.
"""


class TrackingError(Exception):
    pass


class InvalidIdentity(TrackingError):
    """Malformed cookie or visit id."""


class ConflictExhausted(TrackingError):
    """find_or_create lost the uniqueness race more times than allowed."""

    def __init__(self, entity: str, key, attempts: int):
        super().__init__(f"{entity} {key!r}: gave up after {attempts} conflicting attempts")
        self.entity = entity
        self.key = key
        self.attempts = attempts


class UpstreamUnavailable(TrackingError):
    """The persistence layer failed for a reason other than a uniqueness conflict."""


class MalformedReferer(TrackingError):
    pass
