"""Matching keys derived from raw domain strings.

A tracked "domain" may be a canonical host (``shop.brand.co.id``), a bare apex
(``brand.com``), a pasted URL (``https://www.brand.com/promo``) or just a brand
token (``brand``). Everything here is total: malformed input degrades to an
empty host key, which callers treat as unmatchable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

MIN_TOKEN_LENGTH = 4
ALIAS_HOST_MAX_LENGTH = 10

# Second-level suffixes under which registrable names take three labels.
MULTI_PART_SUFFIXES = frozenset(
    {
        "ac.id", "biz.id", "co.id", "go.id", "my.id", "net.id", "or.id", "sch.id", "web.id", "ponpes.id",
        "co.uk", "org.uk", "ac.uk", "gov.uk",
        "com.au", "net.au", "org.au",
        "com.sg", "com.my", "com.ph", "com.vn", "co.th", "in.th",
        "co.jp", "ne.jp", "or.jp",
        "co.kr", "com.br", "com.cn", "com.hk", "com.tw", "co.nz", "co.za", "com.tr", "com.mx",
    }
)

_WHITESPACE_RE = re.compile(r"\s+")
_HOST_RE = re.compile(r"[\w.-]+")
_ALNUM_RE = re.compile(r"[a-z0-9]+")
_ALPHA_RE = re.compile(r"[a-z]+")


@dataclass(slots=True)
class DomainKeys:
    host_key: str
    root_key: str
    tokens: set[str] = field(default_factory=set)


def normalize_host(value: str | None) -> str:
    raw = _WHITESPACE_RE.sub("", str(value or "")).lower()
    if not raw:
        return ""
    if "://" not in raw:
        raw = "//" + raw.lstrip("/")
    try:
        host = urlsplit(raw).hostname or ""
    except ValueError:
        return ""
    host = host.strip(".")
    if host.startswith("www."):
        host = host[4:]
    if not host or not _HOST_RE.fullmatch(host):
        return ""
    return host


def get_root_domain(host: str) -> str:
    labels = [label for label in (host or "").split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if ".".join(labels[-2:]) in MULTI_PART_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def tokenize_value(value: str | None) -> list[str]:
    """Alphanumeric runs of ``value`` plus the alphabetic parts of mixed runs."""
    lowered = str(value or "").lower()
    tokens: list[str] = []
    for run in _ALNUM_RE.findall(lowered):
        tokens.append(run)
        if not run.isalpha():
            tokens.extend(part for part in _ALPHA_RE.findall(run) if part != run)
    return list(dict.fromkeys(tokens))


def host_tokens(host: str | None) -> set[str]:
    """Every substring of at least ``MIN_TOKEN_LENGTH`` characters of each run in ``host``.

    Result hosts are tokenized this way so that a brand token embedded in a
    longer label (``brand`` in ``brandstore.net``) is found by a plain index lookup.
    """
    found: set[str] = set()
    for run in tokenize_value(host):
        size = len(run)
        for start in range(0, size - MIN_TOKEN_LENGTH + 1):
            for end in range(start + MIN_TOKEN_LENGTH, size + 1):
                found.add(run[start:end])
    return found


def is_alias_host(host_key: str) -> bool:
    return "." not in host_key or len(host_key) < ALIAS_HOST_MAX_LENGTH


def build_domain_keys(raw_domain: str | None, brand_code: str | None = "") -> DomainKeys:
    host_key = normalize_host(raw_domain)
    if not host_key:
        return DomainKeys(host_key="", root_key="", tokens=set())
    tokens = {
        token
        for token in tokenize_value(host_key) + tokenize_value(brand_code)
        if len(token) >= MIN_TOKEN_LENGTH
    }
    return DomainKeys(host_key=host_key, root_key=get_root_domain(host_key), tokens=tokens)
