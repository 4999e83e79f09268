# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tri-state classification cache with asymmetric expiration.

Thin async layer over a ``KVStoreProtocol``.  One KV item per URL, keyed
``urlcache:<url>``, so concurrent writers race per URL and the later write
wins.

Expiration:
- GREEN entries expire once ``now - timestamp >= cache_duration``
- RED and ORANGE entries never expire; only an explicit clear or a later
  write replaces them

No merge: every ``put`` replaces the whole entry and stamps the current time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from . import Status
from .kvstore import KVStoreProtocol

logger = logging.getLogger(__name__)

KEY_PREFIX = "urlcache:"

# Statuses that may be cached (GRAY is never persisted)
CACHEABLE = frozenset({Status.GREEN, Status.RED, Status.ORANGE})


def cache_key(url: str) -> str:
    return KEY_PREFIX + url


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A cached classification for one URL string."""

    status: Status
    timestamp: float  # time.time()
    canonical_url: str = ""  # GREEN only
    record_url: str = ""  # GREEN only
    matching_urls: list[str] = field(default_factory=list)  # ORANGE only

    def is_expired(self, cache_duration: float, now: float) -> bool:
        """GREEN only: *cache_duration* is in seconds."""
        return self.status == Status.GREEN and now - self.timestamp >= cache_duration

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value, "timestamp": self.timestamp}
        if self.canonical_url:
            data["canonical_url"] = self.canonical_url
        if self.record_url:
            data["record_url"] = self.record_url
        if self.matching_urls:
            data["matching_urls"] = list(self.matching_urls)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> CacheEntry | None:
        """Parse a stored entry.  Returns None for anything unrecognizable."""
        if not isinstance(data, dict):
            return None
        try:
            status = Status(data.get("status"))
        except ValueError:
            return None
        if status not in CACHEABLE:
            return None
        try:
            timestamp = float(data.get("timestamp", 0))
        except (TypeError, ValueError):
            return None
        return cls(
            status=status,
            timestamp=timestamp,
            canonical_url=data.get("canonical_url") or "",
            record_url=data.get("record_url") or "",
            matching_urls=list(data.get("matching_urls") or []),
        )


# ---------------------------------------------------------------------------
# Cache stats (observability)
# ---------------------------------------------------------------------------


@dataclass
class CacheStats:
    """Counters for cache behaviour used for logging and CLI output."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    writes: int = 0
    invalid_entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# ClassificationCache
# ---------------------------------------------------------------------------


class ClassificationCache:
    """URL → CacheEntry map persisted in a KV store.

    *cache_duration* is the GREEN lifetime in minutes.  *clock* returns
    wall-clock epoch seconds and is injectable for tests.
    """

    def __init__(
        self,
        store: KVStoreProtocol,
        *,
        cache_duration: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if cache_duration <= 0:
            raise ValueError(f"cache_duration must be > 0, got {cache_duration}")
        self._store = store
        self._cache_duration = cache_duration
        self._clock = clock
        self._stats = CacheStats()

    @property
    def cache_duration(self) -> float:
        """GREEN lifetime in minutes."""
        return self._cache_duration

    @cache_duration.setter
    def cache_duration(self, minutes: float) -> None:
        if minutes <= 0:
            raise ValueError(f"cache_duration must be > 0, got {minutes}")
        self._cache_duration = minutes

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def now(self) -> float:
        return self._clock()

    # -- Read --

    def _parse(self, url: str, raw: Any, now: float) -> CacheEntry | None:
        if raw is None:
            self._stats.misses += 1
            return None
        entry = CacheEntry.from_dict(raw)
        if entry is None:
            self._stats.invalid_entries += 1
            self._stats.misses += 1
            logger.warning("Ignoring unrecognized cache entry for %s: %r", url, raw)
            return None
        if entry.is_expired(self._cache_duration * 60, now):
            self._stats.expirations += 1
            self._stats.misses += 1
            logger.debug("Cache GREEN expired: %s", url)
            return None
        self._stats.hits += 1
        return entry

    async def get(self, url: str) -> CacheEntry | None:
        """Entry for *url*, or None when missing or expired (GREEN only)."""
        key = cache_key(url)
        found = await self._store.get([key])
        return self._parse(url, found.get(key), self._clock())

    async def bulk_get(self, urls: Iterable[str]) -> dict[str, CacheEntry | None]:
        """Concurrent ``get`` for every URL.  Result preserves input order."""
        urls = list(dict.fromkeys(urls))
        entries = await asyncio.gather(*(self.get(url) for url in urls))
        return dict(zip(urls, entries, strict=True))

    async def fresh_green_entries(self) -> dict[str, CacheEntry]:
        """Every unexpired GREEN entry in the cache, keyed by URL."""
        now = self._clock()
        duration = self._cache_duration * 60
        fresh: dict[str, CacheEntry] = {}
        for key, raw in (await self._store.scan(KEY_PREFIX)).items():
            entry = CacheEntry.from_dict(raw)
            if entry is None or entry.status != Status.GREEN:
                continue
            if entry.is_expired(duration, now):
                continue
            fresh[key[len(KEY_PREFIX) :]] = entry
        return fresh

    # -- Write --

    def _entry(
        self,
        status: Status,
        canonical_url: str | None,
        record_url: str | None,
        matching_urls: Iterable[str] | None,
    ) -> CacheEntry:
        if status not in CACHEABLE:
            raise ValueError(f"Cannot cache status {status!r}")
        return CacheEntry(
            status=status,
            timestamp=self._clock(),
            canonical_url=canonical_url or "",
            record_url=record_url or "",
            matching_urls=list(dict.fromkeys(matching_urls or [])),
        )

    async def put(
        self,
        url: str,
        status: Status,
        *,
        canonical_url: str | None = None,
        record_url: str | None = None,
        matching_urls: Iterable[str] | None = None,
    ) -> CacheEntry:
        """Overwrite the entry for *url*, stamping the current time."""
        entry = self._entry(status, canonical_url, record_url, matching_urls)
        await self._store.set({cache_key(url): entry.to_dict()})
        self._stats.writes += 1
        logger.debug("Cache put: %s → %s", url, status.value)
        return entry

    async def put_many(
        self,
        urls: Iterable[str],
        status: Status,
        *,
        canonical_url: str | None = None,
        record_url: str | None = None,
        matching_urls: Iterable[str] | None = None,
    ) -> int:
        """Write the same entry for every URL in one KV batch.  Returns the count."""
        entry = self._entry(status, canonical_url, record_url, matching_urls)
        items = {cache_key(url): entry.to_dict() for url in urls}
        if not items:
            return 0
        await self._store.set(items)
        self._stats.writes += len(items)
        return len(items)

    async def mark_red(self, urls: Iterable[str]) -> int:
        """Persist RED for every URL not already RED.  Returns the number written."""
        keys = [cache_key(url) for url in dict.fromkeys(urls)]
        if not keys:
            return 0
        existing = await self._store.get(keys)
        red = Status.RED.value
        to_write = [k for k in keys if not (isinstance(existing.get(k), dict) and existing[k].get("status") == red)]
        if not to_write:
            return 0
        entry = self._entry(Status.RED, None, None, None).to_dict()
        await self._store.set({k: entry for k in to_write})
        self._stats.writes += len(to_write)
        logger.debug("Cache mark_red: %d of %d URLs written", len(to_write), len(keys))
        return len(to_write)

    # -- Removal --

    async def remove(self, url: str) -> bool:
        """Delete the entry for *url*.  Returns True when one existed."""
        key = cache_key(url)
        existed = key in await self._store.get([key])
        await self._store.remove([key])
        return existed

    async def clear(self) -> int:
        """Delete every cache entry.  Returns the number removed."""
        keys = list(await self._store.scan(KEY_PREFIX))
        await self._store.remove(keys)
        logger.info("Cache cleared: %d entries removed", len(keys))
        return len(keys)
