"""Race-safe lookup-or-create over uniquely keyed rows.

Repeated raw values (cookies, user agents, referers, attribution tuples, ...) are
collapsed onto one canonical row. The database unique constraint decides who wins a
creation race; losers re-read after the conflict. Every operation runs in its own
short-lived session and commits immediately, so what lands in the in-process cache
is always a committed, detached row. Cached rows are never mutated.
"""
from __future__ import annotations
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Mapping, Optional, Type, TypeVar
from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt
from visit_tracker.errors import ConflictExhausted, UpstreamUnavailable
from visit_tracker.infrastructure import db

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Metrics
INTERN_CACHE_HITS = Counter('intern_cache_hits_total', 'Interning cache hits', ['entity'])
INTERN_CACHE_MISSES = Counter('intern_cache_misses_total', 'Interning cache misses', ['entity'])
INTERN_CREATED = Counter('intern_created_total', 'Rows created by find_or_create', ['entity'])
INTERN_CONFLICTS = Counter('intern_conflicts_total', 'Unique constraint conflicts on create', ['entity'])


class LookupCache:
    """Bounded LRU map from natural key to canonical row."""

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._entries: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key not in self._entries:
                return None
            self._entries.move_to_end(key)
            return self._entries[key]

    def put(self, key: Hashable, value: Any):
        if self.max_size <= 0:
            return
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries


class InterningStore(Generic[T]):
    """Lookup or atomically create the canonical ``model`` row for a natural key.

    ``key_columns`` names the columns covered by the model's unique constraint. A key
    is either a scalar (single column) or a mapping of column -> value.
    """

    def __init__(
        self,
        model: Type[T],
        key_columns: tuple[str, ...] | str,
        cache_size: int = 100,
        max_attempts: int = 3,
        session_factory: Callable[[], Session] | None = None,
        name: str | None = None,
    ):
        self.model = model
        self.key_columns = (key_columns,) if isinstance(key_columns, str) else tuple(key_columns)
        self.max_attempts = max_attempts
        self.name = name or model.__tablename__
        self.cache = LookupCache(cache_size)
        self._session_factory = session_factory or db.new_session

    def normalize_key(self, key: Any) -> tuple:
        if isinstance(key, Mapping):
            missing = [c for c in self.key_columns if c not in key]
            if missing:
                raise KeyError(f"{self.name}: key missing columns {missing}")
            return tuple(key[c] for c in self.key_columns)
        if len(self.key_columns) != 1:
            raise TypeError(f"{self.name}: composite key requires a mapping")
        return (key,)

    def _display(self, ck: tuple):
        return ck[0] if len(ck) == 1 else dict(zip(self.key_columns, ck))

    def _lookup(self, session: Session, ck: tuple) -> Optional[T]:
        criteria = []
        for col, value in zip(self.key_columns, ck):
            column = getattr(self.model, col)
            criteria.append(column.is_(None) if value is None else column == value)
        return session.execute(select(self.model).where(*criteria).limit(1)).scalars().first()

    def find(self, key: Any) -> Optional[T]:
        """Lookup only; never creates."""
        ck = self.normalize_key(key)
        cached = self.cache.get(ck)
        if cached is not None:
            INTERN_CACHE_HITS.labels(entity=self.name).inc()
            return cached
        INTERN_CACHE_MISSES.labels(entity=self.name).inc()
        with self._session_factory() as session:
            try:
                entity = self._lookup(session, ck)
            except SQLAlchemyError as exc:
                raise UpstreamUnavailable(f"{self.name} lookup failed: {exc}") from exc
        if entity is not None:
            self.cache.put(ck, entity)
        return entity

    def find_or_create(self, key: Any, defaults: Mapping[str, Any] | None = None) -> T:
        """Return the canonical row for ``key``, creating it (with ``defaults``) on a miss.

        A uniqueness conflict means a concurrent caller created the row first; the
        lookup is retried up to ``max_attempts`` times before ConflictExhausted.
        """
        return self.get_or_create(key, defaults)[0]

    def get_or_create(self, key: Any, defaults: Mapping[str, Any] | None = None) -> tuple[T, bool]:
        """Like find_or_create, also reporting whether this call created the row."""
        ck = self.normalize_key(key)
        cached = self.cache.get(ck)
        if cached is not None:
            INTERN_CACHE_HITS.labels(entity=self.name).inc()
            return cached, False
        INTERN_CACHE_MISSES.labels(entity=self.name).inc()
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(IntegrityError),
            ):
                with attempt:
                    entity, created = self._lookup_or_insert(ck, defaults)
        except RetryError as exc:
            raise ConflictExhausted(self.name, self._display(ck), self.max_attempts) from exc
        self.cache.put(ck, entity)
        return entity, created

    def _lookup_or_insert(self, ck: tuple, defaults: Mapping[str, Any] | None) -> tuple[T, bool]:
        with self._session_factory() as session:
            try:
                entity = self._lookup(session, ck)
                if entity is not None:
                    return entity, False
                values = dict(defaults or {})
                values.update(zip(self.key_columns, ck))
                entity = self.model(**values)
                session.add(entity)
                session.commit()
            except IntegrityError:
                session.rollback()
                INTERN_CONFLICTS.labels(entity=self.name).inc()
                logger.debug("intern conflict on %s %r, re-reading", self.name, self._display(ck))
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise UpstreamUnavailable(f"{self.name} find_or_create failed: {exc}") from exc
        INTERN_CREATED.labels(entity=self.name).inc()
        return entity, True
