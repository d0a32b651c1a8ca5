"""End-to-end tests through the FastAPI host with the tracking middleware installed."""

import uuid

import pytest
from fastapi import Depends, Request
from fastapi.testclient import TestClient

from visit_tracker.api.main import create_app
from visit_tracker.api.middleware import get_tracker
from visit_tracker.models.tables import Event, Ownership, Pageview, Visit

from conftest import count, fetch_all


@pytest.fixture
def app():
    app = create_app()

    @app.get("/landing")
    def landing(request: Request):
        tracker = request.state.tracker
        tracker.queue_event("landing_seen")
        return {"visit_id": tracker.visit_id}

    @app.get("/broken")
    def broken(tracker=Depends(get_tracker)):
        return {"tracking": tracker.tracking}

    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_browser_request_is_tracked(client):
    resp = client.get("/landing?utm_source=fb&page=1", headers={"referer": "https://news.example/a"})
    assert resp.status_code == 200
    assert "visitor" in resp.cookies
    (pageview,) = fetch_all(Pageview)
    assert pageview.http_status == 200
    assert pageview.query_string == "page=1"
    assert pageview.visit_id == resp.json()["visit_id"]
    (event,) = fetch_all(Event)
    assert event.pageview_id == pageview.id


def test_session_keeps_visit_across_requests(client):
    first = client.get("/landing").json()["visit_id"]
    second = client.get("/landing").json()["visit_id"]
    assert first == second
    assert count(Visit) == 1
    assert count(Pageview) == 2


def test_health_is_not_tracked(client):
    resp = client.get("/health")
    assert resp.json()["status"] == "ok"
    assert count(Pageview) == 0
    assert "visitor" not in resp.cookies


def test_api_protocol_uses_parameters(client):
    cookie_id = str(uuid.uuid4())
    visit_id = str(uuid.uuid4())
    params = {"cookie_id": cookie_id, "visit_id": visit_id, "user_agent": "Mozilla/5.0"}
    resp = client.post("/api/v1/events", params=params, json={"event_type": "signup", "meta": {"plan": "pro"}})
    assert resp.json() == {"queued": True, "visit_id": visit_id}
    (event,) = fetch_all(Event)
    assert event.visit_id == visit_id
    assert event.meta == {"plan": "pro"}
    (visit,) = fetch_all(Visit)
    assert visit.cookie_id == cookie_id


def test_identify_endpoint(client):
    params = {"cookie_id": str(uuid.uuid4()), "visit_id": str(uuid.uuid4())}
    for _ in range(2):
        resp = client.post("/api/v1/identify", params=params, json={"owner": "customer-3"})
        assert resp.json()["identified"] is True
    assert count(Ownership) == 1


def test_request_survives_tracking_outage(client, monkeypatch):
    from visit_tracker.tracking.engine import get_engine
    from visit_tracker.errors import UpstreamUnavailable

    def unavailable(*args, **kwargs):
        raise UpstreamUnavailable("database down")

    monkeypatch.setattr(get_engine().identity, "ensure_cookie", unavailable)
    resp = client.get("/broken")
    assert resp.status_code == 200
    assert resp.json() == {"tracking": False}
    assert count(Pageview) == 0


def test_browser_pageview_records_accepted_media_type(client):
    client.get("/landing", headers={"accept": "text/html,application/xhtml+xml;q=0.9"})
    (pageview,) = fetch_all(Pageview)
    assert pageview.mime_type == "text/html"


def test_pageview_prefers_body_content_type(client):
    client.post("/api/v1/events", params={"cookie_id": str(uuid.uuid4()), "visit_id": str(uuid.uuid4())},
                json={"event_type": "signup"})
    (pageview,) = fetch_all(Pageview)
    assert pageview.mime_type == "application/json"
