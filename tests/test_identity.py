"""Tests for cookie, user agent, referer and owner identity."""

import uuid

import pytest

from visit_tracker.errors import InvalidIdentity
from visit_tracker.models.tables import Attribution, Cookie, Ownership, Referer
from visit_tracker.tracking.identity import (
    CookieMode,
    is_valid_cookie,
    is_valid_visit_id,
    normalize_host,
)

from conftest import count, fetch_all


@pytest.fixture
def identity(tracking_engine):
    return tracking_engine.identity


def test_check_cookie_rejects_non_uuid(identity):
    with pytest.raises(InvalidIdentity):
        identity.check_cookie("not-a-uuid")


def test_cookie_must_be_v4():
    assert is_valid_cookie(str(uuid.uuid4()))
    assert not is_valid_cookie(str(uuid.uuid1()))
    assert is_valid_visit_id(str(uuid.uuid1()))
    assert not is_valid_visit_id("")


def test_browser_mode_mints_a_cookie_when_missing(identity):
    cookie_id = identity.ensure_cookie(None, CookieMode.BROWSER)
    assert is_valid_cookie(cookie_id)
    assert identity.cookies.find(cookie_id) is not None


def test_browser_mode_reuses_a_known_cookie(identity):
    known = identity.ensure_cookie(None)
    assert identity.ensure_cookie(known.upper()) == known
    assert count(Cookie) == 1


def test_browser_mode_replaces_unknown_and_malformed_cookies(identity):
    unknown = str(uuid.uuid4())
    assert identity.ensure_cookie(unknown) != unknown
    assert identity.ensure_cookie("garbage") != "garbage"
    assert count(Cookie) == 2


def test_strict_mode_never_mints(identity):
    unknown = str(uuid.uuid4())
    assert identity.ensure_cookie(unknown, CookieMode.STRICT) is None
    assert identity.ensure_cookie(None, CookieMode.STRICT) is None
    identity.cookies.find_or_create(unknown)
    assert identity.ensure_cookie(unknown, CookieMode.STRICT) == unknown


def test_api_mode_interns_caller_generated_cookie(identity):
    supplied = str(uuid.uuid4())
    assert identity.ensure_cookie(supplied, CookieMode.API) == supplied
    assert identity.ensure_cookie(supplied, CookieMode.API) == supplied
    assert count(Cookie) == 1


def test_blank_user_agent_uses_sentinel(identity, settings):
    blank = identity.user_agent("   ")
    assert blank.user_agent == settings.blank_user_agent_string
    assert identity.resolve_user_agent(None) == blank.id


def test_user_agent_interning(identity):
    ua = "curl/8.4.0"
    assert identity.find_user_agent(ua) is None
    assert identity.resolve_user_agent(ua) == identity.resolve_user_agent(ua)
    assert identity.find_user_agent(ua).user_agent == ua


def test_referer_is_decomposed_and_interned(identity):
    referer = identity.referer("http://www.example.com/landing?utm_source=fb&ref=nav")
    assert referer is not None
    assert identity.domains.find("example.com").id == referer.domain_id
    assert identity.paths.find("/landing").id == referer.path_id
    assert identity.query_strings.find("ref=nav").id == referer.query_string_id
    (attribution,) = [a for a in fetch_all(Attribution) if a.id == referer.attribution_id]
    assert attribution.source == "facebook"
    again = identity.referer("https://example.com/landing?ref=nav&utm_source=fb")
    assert again.id == referer.id
    assert count(Referer) == 1


def test_schemeless_referer(identity):
    uri = identity.parse_referer("www.Example.com/a/b")
    assert uri.host == "example.com"
    assert uri.path == "/a/b"


@pytest.mark.parametrize("raw", [None, "", "   ", "not a url", "http://[broken"])
def test_unusable_referer_is_absent(identity, raw):
    assert identity.parse_referer(raw) is None
    assert identity.referer(raw) is None


def test_normalize_host():
    assert normalize_host("WWW.Example.COM.") == "example.com"
    assert normalize_host(None) is None


def test_owner_requires_identifier(identity):
    with pytest.raises(ValueError):
        identity.owner("  ")


def test_ownership_is_idempotent(identity):
    cookie_id = identity.ensure_cookie(None)
    owner = identity.owner("customer-42")
    first = identity.ownership(cookie_id, owner.id)
    second = identity.ownership(cookie_id, identity.owner("customer-42").id)
    assert first.id == second.id
    assert count(Ownership) == 1
