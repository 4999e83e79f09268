# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Ancestor URLs: broader or related URLs checked to infer relatedness.

Which ancestors are produced depends on the resolved domain rule:

- default (no rule): every shorter path prefix down to the site root
- ``domain_partials``: the site root only
- ``pathN_partials``: the root plus the 1..N segment prefixes
- ``custom_partials``: the rule pattern expanded against the URL, plus root

Pattern language: ``*`` copies exactly one URL path segment, ``**`` copies
all remaining segments and ends the pattern, anything else is literal.
There is no intra-segment wildcard: ``repo*`` is emitted as ``repo*``.
An optional ``?name=*&x=1`` query template copies ``name`` from the URL.
"""

from __future__ import annotations

import logging
from urllib.parse import SplitResult, parse_qsl, urlsplit

from .errors import MalformedURLError
from .rules import PATH_DEPTHS, DefaultDomainLevel, Disabled, MatchLevel, Resolution

logger = logging.getLogger(__name__)


def _parse(url: str) -> SplitResult:
    try:
        parsed = urlsplit(url)
        parsed.port  # noqa: B018 - raises ValueError on a bad port
    except ValueError as e:
        raise MalformedURLError(f"Cannot parse URL {url!r}: {e}") from e
    if not parsed.scheme or not parsed.hostname:
        raise MalformedURLError(f"URL has no host: {url!r}")
    return parsed


def site_root(parsed: SplitResult) -> str:
    """``scheme://host[:port]`` without a trailing slash."""
    host = parsed.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme.lower()}://{host}"


def _segments(path: str) -> list[str]:
    return [s for s in path.split("/") if s]


def _unique(urls: list[str]) -> list[str]:
    return list(dict.fromkeys(urls))


def generic_ancestors(parsed: SplitResult) -> list[str]:
    """Path prefixes from one segment shorter than the full path down to the root.

    ``https://ex.com/a/b/c`` → ``/a/b``, ``/a``, ``/`` and the bare root.
    A single-segment path only yields the bare root.
    """
    root = site_root(parsed)
    segments = _segments(parsed.path)
    ancestors: list[str] = []
    for i in range(len(segments) - 1, -1, -1):
        ancestor_path = "/" + "/".join(segments[:i])
        if ancestor_path != "/" or len(segments) > 1:
            ancestors.append(root + ancestor_path)
    if segments:
        ancestors.append(root)
    return _unique(ancestors)


def _path_level_ancestors(parsed: SplitResult, depth: int) -> list[str]:
    root = site_root(parsed)
    segments = _segments(parsed.path)
    ancestors: list[str] = []
    for i in range(depth, -1, -1):
        if len(segments) >= i:
            ancestors.append(root + ("/" + "/".join(segments[:i]) if i else ""))
    return ancestors


def _expand_query(parsed: SplitResult, query_pattern: str) -> str:
    if "*" not in query_pattern:
        return query_pattern
    actual: dict[str, str] = {}
    for name, value in parse_qsl(parsed.query, keep_blank_values=True):
        actual.setdefault(name, value)
    params: list[str] = []
    for param in query_pattern.split("&"):
        name, sep, value = param.partition("=")
        if sep and value == "*" and name in actual:
            params.append(f"{name}={actual[name]}")
        else:
            params.append(param)
    return "&".join(params)


def expand_pattern(parsed: SplitResult, pattern: str) -> list[str]:
    """Expand a custom rule *pattern* against *parsed*.

    Returns the expanded URL followed by the site root as a fallback
    (the root is omitted when the expansion is the root itself).
    """
    root = site_root(parsed)
    if not pattern:
        return [root]

    path_pattern, _, query_pattern = pattern.partition("?")
    pattern_segments = _segments(path_pattern)
    url_segments = _segments(parsed.path)

    result_path = ""
    if pattern_segments:
        out: list[str] = []
        for i, segment in enumerate(pattern_segments):
            if segment == "*":
                if i >= len(url_segments):
                    break
                out.append(url_segments[i])
            elif segment == "**":
                out.extend(url_segments[i:])
                break
            else:
                out.append(segment)
        result_path = "/" + "/".join(out)

    result_query = _expand_query(parsed, query_pattern) if query_pattern else ""

    expanded = root + result_path + (f"?{result_query}" if result_query else "")
    ancestors = [expanded]
    if result_path != "/" or result_query:
        ancestors.append(root)
    return _unique(ancestors)


def _rule_ancestors(parsed: SplitResult, resolution: Resolution) -> list[str]:
    level = resolution.match_level
    root = site_root(parsed)

    if level in (MatchLevel.EXACT_URL, MatchLevel.CUSTOM_EXACT):
        return []
    if level == MatchLevel.DOMAIN_PARTIALS:
        return [root]
    depth = PATH_DEPTHS.get(level)
    if depth is not None:
        return _unique(_path_level_ancestors(parsed, depth))
    if level == MatchLevel.CUSTOM_PARTIALS:
        pattern = resolution.rule.pattern if resolution.rule is not None else ""
        if not pattern:
            logger.warning("custom_partials rule for %s has no pattern, using site root", parsed.hostname)
            return [root]
        return expand_pattern(parsed, pattern)

    logger.warning("Unknown match level %r, falling back to site root", level)
    return [root]


def generate_ancestors(url: str, resolution: Resolution) -> list[str]:
    """Broader URLs to check for *url* under *resolution* (may be empty)."""
    if isinstance(resolution, Disabled) or not resolution.allows_partials:
        return []
    try:
        parsed = _parse(url)
    except MalformedURLError as e:
        logger.debug("No ancestors: %s", e)
        return []
    if isinstance(resolution, DefaultDomainLevel):
        return generic_ancestors(parsed)
    return _rule_ancestors(parsed, resolution)
