"""Classify SERP result hosts against the tracked domain set."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

from rankwatch.catalog.models import Brand, TrackedDomain
from rankwatch.matching.keys import (
    MIN_TOKEN_LENGTH,
    build_domain_keys,
    get_root_domain,
    host_tokens,
    is_alias_host,
    normalize_host,
)

logger = logging.getLogger(__name__)

MATCH_EXACT = "exact"
MATCH_SUFFIX = "suffix"
MATCH_TOKEN = "token"
MATCH_NONE = "none"

BADGE_OWN = "OWN"
BADGE_UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class DomainLookup:
    exact: dict[str, TrackedDomain] = field(default_factory=dict)
    by_root: dict[str, list[TrackedDomain]] = field(default_factory=dict)
    token_index: dict[str, set[str]] = field(default_factory=dict)
    by_length_desc: list[TrackedDomain] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.by_length_desc)


@dataclass(slots=True)
class MatchResult:
    domain: TrackedDomain | None
    match_type: str

    @property
    def badge(self) -> str:
        return BADGE_OWN if self.domain is not None else BADGE_UNKNOWN


def enrich_domain(domain: TrackedDomain, brand_code: str) -> TrackedDomain:
    """Recompute derived keys, keeping stored values where they are present."""
    generated = build_domain_keys(domain.raw_domain, brand_code)
    host_key = (domain.host_key or generated.host_key).strip().lower()
    root_key = domain.root_key or generated.root_key or get_root_domain(host_key)
    tokens = {t for t in set(domain.tokens or ()) | generated.tokens if len(t) >= MIN_TOKEN_LENGTH}
    return replace(
        domain,
        host_key=host_key,
        root_key=root_key,
        tokens=tokens,
        is_alias_token=bool(host_key) and is_alias_host(host_key),
        brand_code=brand_code,
    )


def build_lookup(
    domains: Iterable[TrackedDomain], brands_by_id: Mapping[int, Brand]
) -> DomainLookup:
    sanitized: list[TrackedDomain] = []
    for domain in domains:
        brand = brands_by_id.get(domain.brand_id)
        if brand is None:
            continue
        enriched = enrich_domain(domain, brand.code)
        if not enriched.host_key:
            continue
        sanitized.append(enriched)

    lookup = DomainLookup()
    by_root: dict[str, list[TrackedDomain]] = defaultdict(list)
    token_index: dict[str, set[str]] = defaultdict(set)
    for item in sanitized:
        lookup.exact[item.host_key] = item
        if item.root_key:
            by_root[item.root_key].append(item)
        if item.is_alias_token:
            for token in item.tokens:
                token_index[token].add(item.host_key)
    lookup.by_root = dict(by_root)
    lookup.token_index = dict(token_index)
    lookup.by_length_desc = sorted(sanitized, key=lambda d: len(d.host_key), reverse=True)
    logger.debug(
        "Built lookup: %s domains, %s roots, %s alias tokens",
        len(sanitized),
        len(lookup.by_root),
        len(lookup.token_index),
    )
    return lookup


def _most_specific(candidates: Iterable[TrackedDomain]) -> TrackedDomain | None:
    unique: dict[object, TrackedDomain] = {}
    for candidate in candidates:
        key = candidate.id if candidate.id is not None else candidate.host_key
        unique.setdefault(key, candidate)
    if not unique:
        return None
    # sorted() is stable, so equal lengths keep first-seen order.
    return sorted(unique.values(), key=lambda d: len(d.host_key), reverse=True)[0]


def classify(result_host: str, lookup: DomainLookup) -> MatchResult:
    if not result_host:
        return MatchResult(None, MATCH_NONE)

    exact = lookup.exact.get(result_host)
    if exact is not None:
        return MatchResult(exact, MATCH_EXACT)

    suffix_candidates = [
        item
        for item in lookup.by_length_desc
        if result_host == item.host_key or result_host.endswith("." + item.host_key)
    ]
    suffix_candidates.extend(lookup.by_root.get(get_root_domain(result_host), []))
    suffix = _most_specific(suffix_candidates)
    if suffix is not None:
        return MatchResult(suffix, MATCH_SUFFIX)

    token_candidates = []
    for token in sorted(host_tokens(result_host)):
        for host_key in sorted(lookup.token_index.get(token, ())):
            candidate = lookup.exact.get(host_key)
            if candidate is not None:
                token_candidates.append(candidate)
    token_match = _most_specific(token_candidates)
    if token_match is not None:
        return MatchResult(token_match, MATCH_TOKEN)

    return MatchResult(None, MATCH_NONE)


def classify_link(link: str, lookup: DomainLookup) -> tuple[str, MatchResult]:
    host = normalize_host(link)
    return host, classify(host, lookup)
