"""Tests for tracking parameter extraction."""

from visit_tracker.tracking.params import (
    TRACKING_PARAMS,
    ParamExtractor,
    extractor,
    parse_query,
    to_query,
)


def test_campaign_and_click_id_are_split():
    raw = {"utm_campaign": "spring", "gclid": "abc123"}
    assert extractor.extract(raw) == {"campaign": "spring"}
    assert extractor.extract_tracking(raw) == {"campaign": "spring", "click_id": "abc123"}


def test_first_alias_in_priority_order_wins():
    raw = {"utm_campaign": "from-utm", "campaign": "explicit"}
    assert extractor.extract(raw)["campaign"] == "explicit"


def test_transform_tables_rewrite_short_codes():
    raw = {"utm_source": "fb", "device": "m", "matchtype": "e", "network": "g", "adtype": "pla"}
    found = extractor.extract(raw)
    assert found["source"] == "facebook"
    assert found["device_type"] == "mobile"
    assert found["match_type"] == "exact"
    assert found["network"] == "google_search"
    assert found["ad_type"] == "product_listing"


def test_values_outside_transform_pass_through():
    assert extractor.extract({"utm_source": "newsletter"}) == {"source": "newsletter"}


def test_unrelated_params_are_ignored():
    assert extractor.extract({"page": "2", "sort": "price"}) == {}
    assert not extractor.has_tracking({"page": "2"})


def test_pixel_cookie_is_tracking_only():
    raw = {"ttp": "pixel-1"}
    assert extractor.extract(raw) == {}
    assert extractor.extract_tracking(raw) == {"pixel_cookie_id": "pixel-1"}
    assert extractor.has_tracking(raw)


def test_extraction_is_deterministic():
    raw = {"utm_source": "fb", "utm_medium": "cpc", "kw": "shoes"}
    assert extractor.extract(raw) == extractor.extract(dict(reversed(list(raw.items()))))


def test_tracked_keys_cover_every_alias():
    keys = extractor.tracked_keys()
    for aliases in TRACKING_PARAMS.values():
        assert set(aliases) <= keys


def test_untracked_params_strip_every_alias():
    raw = {"utm_source": "fb", "gclid": "x", "page": "2"}
    assert extractor.untracked_params(raw) == {"page": "2"}


def test_custom_alias_table():
    custom = ParamExtractor(params={"source": ("src",)}, transforms={}, tracking_only=())
    assert custom.extract({"src": "ads", "utm_source": "fb"}) == {"source": "ads"}
    assert custom.attribution_keys == ("source",)


def test_parse_query_keeps_last_value_and_blanks():
    assert parse_query("?a=1&a=2&b=") == {"a": "2", "b": ""}
    assert parse_query(None) == {}


def test_to_query_is_order_independent():
    assert to_query({"b": "2", "a": "1"}) == to_query({"a": "1", "b": "2"}) == "a=1&b=2"
