"""
Shared pytest fixtures for the visit tracker tests.

Every test gets its own SQLite file under ``tmp_path``, swapped in with
``override_engine``, and fresh settings/engine caches.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from visit_tracker.config import Settings, reset_settings
from visit_tracker.infrastructure import db
from visit_tracker.tracking.context import RequestContext
from visit_tracker.tracking.engine import TrackingEngine, reset_engine

CHROME = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'tracker.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    reset_settings()
    reset_engine()
    previous = db.engine
    sql_engine = db._engine_for(url)
    db.override_engine(sql_engine)
    db.create_all()
    yield sql_engine
    sql_engine.dispose()
    db.override_engine(previous)
    reset_settings()
    reset_engine()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def tracking_engine(settings):
    return TrackingEngine.build(settings)


@pytest.fixture
def make_context():
    """Build a browser request context from a URL."""
    def _make(url="http://shop.example.com/landing", **kwargs):
        kwargs.setdefault("user_agent", CHROME)
        kwargs.setdefault("remote_ip", "203.0.113.7")
        return RequestContext.from_url(url, **kwargs)
    return _make


def count(model) -> int:
    from sqlalchemy import func, select
    with db.new_session() as session:
        return session.scalar(select(func.count()).select_from(model))


def fetch_all(model):
    from sqlalchemy import select
    with db.new_session() as session:
        return list(session.scalars(select(model)))
