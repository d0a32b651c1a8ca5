"""Canonical extraction of marketing tracking parameters.

About ValueTrack parameters:
https://support.google.com/google-ads/answer/2375447

Each canonical dimension lists the raw query-parameter aliases it recognises, in
priority order; the first alias present in the query wins.
"""
from __future__ import annotations
from types import MappingProxyType
from typing import Dict, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode

AttributionTuple = Dict[str, str]

TRACKING_PARAMS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    'ad_group':            ('ad_group', 'adgroup', 'adset_name', 'ovadgrpid', 'ysmadgrpid'),
    'ad_type':             ('ad_type', 'adtype'),
    'affiliate':           ('affiliate', 'aff', 'affid'),
    'app':                 ('aid',),
    'bid_match_type':      ('bidmatchtype', 'bid_match_type', 'bmt'),
    'brand':               ('brand', 'brand_name'),
    'campaign':            ('campaign', 'campaign_name', 'utm_campaign', 'ovcampgid', 'ysmcampgid', 'cn'),
    'campaign_identifier': ('campaign_identifier', 'campaignidentifier', 'campaignid', 'campaign_id', 'cid', 'utm_campaign_id'),
    'click_id':            ('click_id', 'clickid', 'dclid', 'fbclid', 'gclid', 'gclsrc', 'msclkid', 'zanpid', 'ttclid'),
    'content':             ('content', 'ad_name', 'utm_content', 'cc'),
    'content_identifier':  ('content_identifier', 'contentidentifier', 'contentid', 'content_id', 'cntid', 'utm_content_id'),
    'creative':            ('creative', 'adid', 'ovadid'),
    'device_type':         ('device_type', 'devicetype', 'device'),
    'experiment':          ('experiment', 'aceid'),
    'keyword':             ('keyword', 'kw', 'utm_term', 'ovkey', 'ysmkey'),
    'match_type':          ('match_type', 'matchtype', 'match', 'ovmtc', 'ysmmtc'),
    'medium':              ('medium', 'utm_medium', 'cm'),
    'medium_identifier':   ('medium_identifier', 'mediumidentifier', 'mediumid', 'medium_id', 'mid', 'utm_medium_id'),
    'network':             ('network', 'anid'),
    'placement':           ('placement',),
    'position':            ('position', 'adposition', 'ad_position'),
    'search_term':         ('search_term', 'searchterm', 'q', 'querystring', 'ovraw', 'ysmraw'),
    'source':              ('source', 'utm_source', 'cs'),
    'subsource':           ('subsource', 'subid', 'sid', 'effi_id', 'customid', 'afftrack', 'pubref', 'argsite', 'fobs', 'epi', 'ws', 'u1'),
    'target':              ('target',),
    'pixel_cookie_id':     ('ttp',),
})

# Identify a click or a pixel, not a campaign
TRACKING_ONLY = ('click_id', 'pixel_cookie_id')

TRACKING_PARAMS_TRANSFORM: Mapping[str, Mapping[str, str]] = MappingProxyType({
    'ad_type':        {'pe': 'product_extensions',
                       'pla': 'product_listing'},
    'bid_match_type': {'bb': 'bidded broad',
                       'bc': 'bidded content',
                       'be': 'bidded exact',
                       'bp': 'bidded phrase'},
    'device_type':    {'c': 'computer',
                       'm': 'mobile',
                       't': 'tablet'},
    'match_type':     {'b': 'broad',
                       'c': 'content',
                       'e': 'exact',
                       'p': 'phrase',
                       'std': 'standard',
                       'adv': 'advanced',
                       'cnt': 'content'},
    'network':        {'g': 'google_search',
                       's': 'search_partner',
                       'd': 'display_network'},
    'source':         {'fb': 'facebook',
                       'ig': 'instagram',
                       'msg': 'messenger',
                       'an': 'audience network'},
})


class ParamExtractor:
    """Maps raw query parameters onto canonical tracking dimensions. Pure."""

    def __init__(
        self,
        params: Mapping[str, Iterable[str]] = TRACKING_PARAMS,
        transforms: Mapping[str, Mapping[str, str]] = TRACKING_PARAMS_TRANSFORM,
        tracking_only: Iterable[str] = TRACKING_ONLY,
    ):
        self.params = {dim: tuple(aliases) for dim, aliases in params.items()}
        self.transforms = {dim: dict(t) for dim, t in transforms.items()}
        self.tracking_only = frozenset(tracking_only)
        self.attribution_keys = tuple(d for d in self.params if d not in self.tracking_only)
        self._tracked_keys = frozenset(a for aliases in self.params.values() for a in aliases)

    def extract_tracking(self, raw: Mapping[str, str]) -> AttributionTuple:
        """All dimensions present in ``raw``, including tracking-only ones."""
        found: AttributionTuple = {}
        for dim, aliases in self.params.items():
            alias = next((a for a in aliases if a in raw), None)
            if alias is None:
                continue
            found[dim] = raw[alias]
        for dim, table in self.transforms.items():
            if dim in found and found[dim] in table:
                found[dim] = table[found[dim]]
        return found

    def extract(self, raw: Mapping[str, str]) -> AttributionTuple:
        """The attribution tuple: tracked dimensions minus the tracking-only ones."""
        tracking = self.extract_tracking(raw)
        return {dim: tracking[dim] for dim in self.attribution_keys if dim in tracking}

    def tracked_keys(self) -> frozenset[str]:
        return self._tracked_keys

    def untracked_params(self, raw: Mapping[str, str]) -> dict[str, str]:
        return {k: v for k, v in raw.items() if k not in self._tracked_keys}

    def has_tracking(self, raw: Mapping[str, str]) -> bool:
        return any(k in self._tracked_keys for k in raw)


def parse_query(query_string: str | None) -> dict[str, str]:
    """Query string to a flat mapping; for repeated keys the last value wins."""
    if not query_string:
        return {}
    return dict(parse_qsl(query_string.lstrip("?"), keep_blank_values=True))


def to_query(params: Mapping[str, str]) -> str:
    """Stable encoding (sorted keys) so equal parameter sets intern to one row."""
    return urlencode(sorted(params.items()))


extractor = ParamExtractor()
