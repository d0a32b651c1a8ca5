from __future__ import annotations
import hashlib
import json
from typing import Mapping
from visit_tracker.infrastructure.interning import InterningStore
from visit_tracker.models.tables import Attribution
from visit_tracker.tracking.params import AttributionTuple, ParamExtractor, extractor as default_extractor


def canonical_pairs(attribution: Mapping[str, str]) -> list[tuple[str, str]]:
    """Non-empty (dimension, value) pairs sorted by dimension."""
    return sorted((k, v) for k, v in attribution.items() if v)


def tuple_digest(attribution: Mapping[str, str]) -> str:
    payload = json.dumps(canonical_pairs(attribution), separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


EMPTY_DIGEST = tuple_digest({})


class AttributionResolver:
    """Extracts the attribution tuple from raw parameters and interns it by digest."""

    def __init__(self, store: InterningStore[Attribution] | None = None, extractor: ParamExtractor | None = None):
        self.extractor = extractor or default_extractor
        self.store = store or InterningStore(Attribution, "digest", cache_size=50)

    def digest(self, raw: Mapping[str, str]) -> str:
        return tuple_digest(self.extractor.extract(raw))

    def has_attribution(self, raw: Mapping[str, str]) -> bool:
        return bool(canonical_pairs(self.extractor.extract(raw)))

    def resolve_tuple(self, attribution: AttributionTuple) -> Attribution:
        pairs = dict(canonical_pairs(attribution))
        return self.store.find_or_create(tuple_digest(pairs), defaults=pairs)

    def lookup(self, raw: Mapping[str, str]) -> Attribution:
        return self.resolve_tuple(self.extractor.extract(raw))

    def resolve(self, raw: Mapping[str, str]) -> int:
        return self.lookup(raw).id
