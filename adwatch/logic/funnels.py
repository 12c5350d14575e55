"""Destination URL parsing, normalization and funnel classification.

Classification is driven by an ordered rule table (``funnel_rules.yml`` by
default, or the file named by ``FUNNEL_RULES_PATH``). The first rule with a
matching pattern decides the funnel type; a parseable URL that matches no rule
is ``unknown``.
"""

from __future__ import annotations

import functools
import logging
import os
import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import yaml

logger = logging.getLogger(__name__)

RULES_PATH = pathlib.Path(__file__).with_name("funnel_rules.yml")

TRACKING_LINK = "tracking_link"
APP_STORE = "app_store"
QUIZ_FUNNEL = "quiz_funnel"
LANDING_PAGE = "landing_page"
UNKNOWN = "unknown"

SCHEMELESS_HOST_RE = re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+(:\d+)?([/?#]|$)")


@dataclass(frozen=True, slots=True)
class ParsedUrl:
    scheme: str
    domain: str
    port: int | None
    path: str
    query: tuple[tuple[str, str], ...]

    @property
    def netloc(self) -> str:
        return f"{self.domain}:{self.port}" if self.port is not None else self.domain

    @property
    def query_keys(self) -> frozenset[str]:
        return frozenset(key.lower() for key, _ in self.query)


@dataclass(frozen=True, slots=True)
class UrlPattern:
    schemes: frozenset[str] = frozenset()
    domain: re.Pattern[str] | None = None
    path: re.Pattern[str] | None = None
    query_keys: frozenset[str] = frozenset()

    def matches(self, url: ParsedUrl) -> bool:
        if self.schemes and url.scheme not in self.schemes:
            return False
        if self.domain is not None and not self.domain.search(url.domain):
            return False
        if self.path is not None and not self.path.search(url.path.lower()):
            return False
        if self.query_keys and not (self.query_keys & url.query_keys):
            return False
        return True


@dataclass(frozen=True, slots=True)
class FunnelRule:
    funnel_type: str
    patterns: tuple[UrlPattern, ...]

    def matches(self, url: ParsedUrl) -> bool:
        return any(pattern.matches(url) for pattern in self.patterns)


@dataclass(frozen=True, slots=True)
class FunnelPolicy:
    rules: tuple[FunnelRule, ...]
    tracking_exact: frozenset[str] = frozenset()
    tracking_prefixes: tuple[str, ...] = ()
    campaign_params: frozenset[str] = field(default_factory=frozenset)

    def is_tracking_param(self, key: str) -> bool:
        lowered = key.lower()
        return lowered in self.tracking_exact or lowered.startswith(self.tracking_prefixes)


def _pattern_from_dict(data: Mapping[str, Any]) -> UrlPattern:
    unknown = set(data) - {"schemes", "domain", "path", "query_keys"}
    if unknown:
        raise ValueError(f"Unknown funnel pattern fields: {sorted(unknown)}")
    if not data:
        raise ValueError("Funnel pattern must set at least one field")
    return UrlPattern(
        schemes=frozenset(s.lower() for s in data.get("schemes", ())),
        domain=re.compile(data["domain"]) if data.get("domain") else None,
        path=re.compile(data["path"]) if data.get("path") else None,
        query_keys=frozenset(k.lower() for k in data.get("query_keys", ())),
    )


def policy_from_dict(data: Mapping[str, Any]) -> FunnelPolicy:
    rules = []
    for item in data.get("rules", []):
        patterns = tuple(_pattern_from_dict(p) for p in item.get("patterns", []))
        if not patterns:
            raise ValueError(f"Funnel rule {item.get('funnel_type')!r} has no patterns")
        rules.append(FunnelRule(funnel_type=str(item["funnel_type"]), patterns=patterns))
    tracking = data.get("tracking_params") or {}
    return FunnelPolicy(
        rules=tuple(rules),
        tracking_exact=frozenset(p.lower() for p in tracking.get("exact", ())),
        tracking_prefixes=tuple(p.lower() for p in tracking.get("prefixes", ())),
        campaign_params=frozenset(p.lower() for p in data.get("campaign_params", ())),
    )


def load_policy(path: str | os.PathLike[str] | None = None) -> FunnelPolicy:
    path = path or os.environ.get("FUNNEL_RULES_PATH")
    if path:
        return _read_policy(pathlib.Path(path))
    return _default_policy()


@functools.lru_cache(maxsize=1)
def _default_policy() -> FunnelPolicy:
    return _read_policy(RULES_PATH)


def _read_policy(path: pathlib.Path) -> FunnelPolicy:
    return policy_from_dict(yaml.safe_load(path.read_text()) or {})


def parse_funnel_url(raw: str | None) -> ParsedUrl | None:
    """Parse a destination URL, or return None when it is absent or unusable."""
    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return None
    if "://" not in candidate and SCHEMELESS_HOST_RE.match(candidate):
        candidate = f"https://{candidate}"
    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    return ParsedUrl(
        scheme=parts.scheme.lower(),
        domain=hostname.lower().rstrip("."),
        port=port,
        path=parts.path or "/",
        query=tuple(parse_qsl(parts.query, keep_blank_values=True)),
    )


def normalize_funnel_url(url: ParsedUrl, policy: FunnelPolicy) -> str:
    """Canonical funnel URL: no fragment, no tracking parameters, sorted query."""
    kept = sorted((key, value) for key, value in url.query if not policy.is_tracking_param(key))
    return urlunsplit((url.scheme, url.netloc, url.path, urlencode(kept), ""))


def extract_campaign_info(url: ParsedUrl, policy: FunnelPolicy) -> dict[str, str]:
    info: dict[str, str] = {}
    for key, value in url.query:
        if key.lower() in policy.campaign_params and key not in info:
            info[key] = value
    return info


def classify(url: ParsedUrl, policy: FunnelPolicy) -> str:
    for rule in policy.rules:
        if rule.matches(url):
            return rule.funnel_type
    logger.debug("No funnel rule matched %s", url.netloc)
    return UNKNOWN


def classify_url(raw: str | None, policy: FunnelPolicy | None = None) -> str | None:
    """Classify a raw destination URL; None when the URL is absent or unparseable."""
    parsed = parse_funnel_url(raw)
    if parsed is None:
        return None
    return classify(parsed, policy or load_policy())


def funnel_types(policy: FunnelPolicy) -> Sequence[str]:
    return [rule.funnel_type for rule in policy.rules] + [UNKNOWN]
