# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-domain matching rules and their resolution for a URL.

A rule list is ordered and the first match wins.  A rule's ``domain`` is a
hostname, a hostname suffix (``example.com`` also covers ``blog.example.com``),
or a URL scheme used as a pseudo-domain (``chrome``, ``about``, ``file``).

Resolution is a tagged variant instead of a bool-or-object:

- ``Disabled``: the URL must not be looked up at all (GRAY, domain-excluded)
- ``DefaultDomainLevel``: no rule matched; infer relatedness from the
  generic ancestor chain
- ``Resolved``: a rule matched; ``match_level`` decides the ancestors

Unparseable URLs resolve to ``DefaultDomainLevel`` (fail-open).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import urlsplit

from .errors import MalformedURLError

logger = logging.getLogger(__name__)


class MatchLevel(StrEnum):
    """Granularity at which relatedness is inferred for a domain."""

    DISABLED = "disabled"
    EXACT_URL = "exact_url"
    DOMAIN_PARTIALS = "domain_partials"
    PATH1_PARTIALS = "path1_partials"
    PATH2_PARTIALS = "path2_partials"
    PATH3_PARTIALS = "path3_partials"
    CUSTOM_EXACT = "custom_exact"
    CUSTOM_PARTIALS = "custom_partials"


# Levels that only ever check the URL's own variants
SELF_ONLY_LEVELS = frozenset({MatchLevel.EXACT_URL, MatchLevel.CUSTOM_EXACT})

# Levels whose ancestors come from the rule's pattern
CUSTOM_LEVELS = frozenset({MatchLevel.CUSTOM_EXACT, MatchLevel.CUSTOM_PARTIALS})

PATH_DEPTHS: dict[str, int] = {
    MatchLevel.PATH1_PARTIALS: 1,
    MatchLevel.PATH2_PARTIALS: 2,
    MatchLevel.PATH3_PARTIALS: 3,
}

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")


@dataclass(frozen=True, slots=True)
class DomainRule:
    """A user-authored rule.  ``match_level`` may be an unknown raw string."""

    domain: str
    match_level: str = MatchLevel.DOMAIN_PARTIALS
    pattern: str = ""

    def matches(self, key: str) -> bool:
        """True when *key* equals the rule domain or is a sub-domain of it."""
        domain = self.domain.strip().lower()
        if not domain or not key:
            return False
        return key == domain or key.endswith("." + domain)


# ---------------------------------------------------------------------------
# Resolution variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Disabled:
    """Matching disabled for this URL by *rule*."""

    rule: DomainRule | None = None

    @property
    def allows_partials(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class DefaultDomainLevel:
    """No rule matched: domain-level inference with partials allowed."""

    @property
    def match_level(self) -> str:
        return MatchLevel.DOMAIN_PARTIALS

    @property
    def allows_partials(self) -> bool:
        return True

    @property
    def match_only_self(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Resolved:
    """A rule matched and inference runs at *match_level*."""

    match_level: str
    rule: DomainRule
    allows_partials: bool

    @property
    def match_only_self(self) -> bool:
        return self.match_level in SELF_ONLY_LEVELS


Resolution = Disabled | DefaultDomainLevel | Resolved

DEFAULT_RESOLUTION = DefaultDomainLevel()


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def lookup_key(url: str) -> str:
    """Rule lookup key: the scheme for non-web URLs, else the hostname.

    Raises:
        MalformedURLError: If *url* has no scheme or a web URL has no host.
    """
    m = _SCHEME_RE.match(url or "")
    if m is None:
        raise MalformedURLError(f"URL has no scheme: {url!r}")
    scheme = m.group(1).lower()
    if scheme not in ("http", "https"):
        return scheme
    try:
        host = urlsplit(url).hostname
    except ValueError as e:
        raise MalformedURLError(f"Cannot parse URL {url!r}: {e}") from e
    if not host:
        raise MalformedURLError(f"URL has no host: {url!r}")
    return host


def find_rule(key: str, rules: Sequence[DomainRule]) -> DomainRule | None:
    """First rule matching *key*, or None."""
    for rule in rules:
        if rule.matches(key):
            return rule
    return None


def resolve_rule(url: str, rules: Sequence[DomainRule]) -> Resolution:
    """Decide whether and how relatedness inference applies to *url*."""
    try:
        key = lookup_key(url)
    except MalformedURLError as e:
        logger.warning("%s; using default domain-level matching", e)
        return DEFAULT_RESOLUTION

    rule = find_rule(key, rules)
    if rule is None:
        logger.debug("No domain rule for %s, using default (domain_partials)", key)
        return DEFAULT_RESOLUTION

    if rule.match_level == MatchLevel.DISABLED:
        logger.debug("Matching disabled for %s by rule %s", key, rule.domain)
        return Disabled(rule)

    allows_partials = rule.match_level not in SELF_ONLY_LEVELS
    logger.debug("Rule %s applies to %s (level=%s partials=%s)", rule.domain, key, rule.match_level, allows_partials)
    return Resolved(match_level=rule.match_level, rule=rule, allows_partials=allows_partials)


def is_excluded(url: str, rules: Sequence[DomainRule]) -> bool:
    """True when the rules disable matching for *url* entirely."""
    return isinstance(resolve_rule(url, rules), Disabled)
