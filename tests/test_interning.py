"""Tests for race-safe lookup-or-create."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from visit_tracker.errors import ConflictExhausted
from visit_tracker.infrastructure.interning import InterningStore, LookupCache
from visit_tracker.models.tables import Cookie, Domain, Referer

from conftest import count


def test_find_never_creates():
    store = InterningStore(Domain, "domain")
    assert store.find("example.com") is None
    assert count(Domain) == 0


def test_find_or_create_returns_one_canonical_row():
    store = InterningStore(Domain, "domain")
    first = store.find_or_create("example.com")
    second = InterningStore(Domain, "domain").find_or_create("example.com")
    assert first.id == second.id
    assert count(Domain) == 1
    assert store.find("example.com").id == first.id


def test_get_or_create_reports_creation():
    store = InterningStore(Domain, "domain", cache_size=0)
    _, created = store.get_or_create("a.example")
    _, again = store.get_or_create("a.example")
    assert created is True
    assert again is False


def test_composite_key_requires_mapping():
    store = InterningStore(Referer, ("domain_id", "path_id", "query_string_id", "attribution_id"))
    with pytest.raises(TypeError):
        store.normalize_key(1)
    with pytest.raises(KeyError):
        store.normalize_key({"domain_id": 1})


def test_cache_serves_repeat_lookups(monkeypatch):
    store = InterningStore(Domain, "domain", cache_size=10)
    row = store.find_or_create("cached.example")
    monkeypatch.setattr(store, "_lookup", lambda session, ck: pytest.fail("cache bypassed"))
    assert store.find("cached.example") is row
    assert store.find_or_create("cached.example") is row


def test_lookup_cache_evicts_least_recently_used():
    cache = LookupCache(max_size=2)
    cache.put("a", 1)
    cache.put("b", 2)
    assert cache.get("a") == 1
    cache.put("c", 3)
    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert len(cache) == 2


def test_zero_size_cache_stores_nothing():
    cache = LookupCache(max_size=0)
    cache.put("a", 1)
    assert cache.get("a") is None


def test_concurrent_creators_converge_on_one_row():
    workers = 8
    barrier = threading.Barrier(workers)

    def create(_):
        store = InterningStore(Cookie, "cookie_id", cache_size=0, max_attempts=5)
        barrier.wait()
        return store.find_or_create("7f1c2a4e-9b3d-4c1e-8f2a-6d5b4c3a2e1f").id

    with ThreadPoolExecutor(max_workers=workers) as pool:
        ids = set(pool.map(create, range(workers)))
    assert len(ids) == 1
    assert count(Cookie) == 1


def test_conflicts_beyond_attempt_limit_raise(monkeypatch):
    InterningStore(Domain, "domain").find_or_create("taken.example")
    store = InterningStore(Domain, "domain", cache_size=0, max_attempts=3)
    calls = []

    def blind_lookup(session, ck):
        calls.append(ck)
        return None

    monkeypatch.setattr(store, "_lookup", blind_lookup)
    with pytest.raises(ConflictExhausted) as info:
        store.find_or_create("taken.example")
    assert info.value.attempts == 3
    assert info.value.entity == "domains"
    assert len(calls) == 3
