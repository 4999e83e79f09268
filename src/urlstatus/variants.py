# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Equivalent-URL variants: the byte-for-byte strings treated as "the same page".

Pure module (no I/O).  Only http(s) URLs have variants; anything else
(``chrome://``, ``about:``, ``file:``) is its own single variant.

For ``https://www.example.com/blog/#top`` the variants are::

    https://www.example.com/blog
    http://www.example.com/blog
    https://example.com/blog
    http://example.com/blog
    https://www.example.com/blog/
"""

from __future__ import annotations

import ipaddress
import logging
from urllib.parse import SplitResult, urlsplit

logger = logging.getLogger(__name__)

_WEB_PREFIXES = ("http://", "https://")
_SCHEMES = ("https", "http")  # https preferred
_WWW = "www."


def is_web_url(url: str) -> bool:
    """True for ``http://`` and ``https://`` URLs (scheme compared case-insensitively)."""
    return url[:8].lower().startswith(_WEB_PREFIXES)


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _netloc(host: str, port: int | None) -> str:
    if ":" in host:  # IPv6 literal
        host = f"[{host}]"
    return f"{host}:{port}" if port else host


def normalize_path(path: str) -> str:
    """Trailing slashes are stripped; an empty result becomes ``/``."""
    return path.rstrip("/") or "/"


def _host_variants(hostname: str) -> list[str]:
    """*hostname*, its bare form (every leading ``www.`` removed), and ``www.`` + bare."""
    bare = hostname
    while bare.startswith(_WWW):
        bare = bare[len(_WWW) :]
    hosts = [hostname]
    if bare:
        hosts.append(bare)
        # Dotless hosts (localhost, intranet names) and IP literals never get www.
        if "." in bare and not _is_ip(bare):
            hosts.append(_WWW + bare)
    return list(dict.fromkeys(hosts))


def _keep(candidate: str) -> bool:
    """Drop candidates whose host has no dot (``localhost`` itself is allowed)."""
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        return False
    return "." in host or host == "localhost"


def _web_variants(url: str, parsed: SplitResult) -> list[str]:
    hostname = parsed.hostname
    if not hostname:
        raise ValueError(f"URL has no host: {url}")
    port = parsed.port
    path = normalize_path(parsed.path)
    # Root pages are stored both with and without the slash
    paths = [path, ""] if path == "/" else [path]

    candidates: list[str] = []
    for host in _host_variants(hostname):
        for scheme in _SCHEMES:
            for p in paths:
                candidates.append(f"{scheme}://{_netloc(host, port)}{p}")

    without_fragment = url.split("#", 1)[0]
    candidates.append(without_fragment)
    if without_fragment.endswith("/"):
        candidates.append(without_fragment.rstrip("/"))

    return [c for c in dict.fromkeys(candidates) if _keep(c)]


def generate_variants(url: str) -> list[str]:
    """Return the ordered, unique list of URL strings equivalent to *url*.

    Never empty: non-web URLs, unparseable URLs, and URLs whose every
    candidate was filtered out all fall back to ``[url]``.
    """
    if not url or not is_web_url(url):
        return [url]
    try:
        parsed = urlsplit(url)
        variants = _web_variants(url, parsed)
    except ValueError as e:
        logger.warning("Cannot generate variants for %s: %s", url, e)
        return [url]
    return variants or [url]
