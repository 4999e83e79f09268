# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for urlstatus.cache.

Tests: put/get, GREEN-only expiry, mark_red skipping, bulk reads,
fresh GREEN scan, removal, invalid entries, CacheStats counters.
"""

from __future__ import annotations

import pytest

from urlstatus import Status
from urlstatus.cache import KEY_PREFIX, CacheEntry, CacheStats, ClassificationCache, cache_key

HOUR = 3600.0
TEN_YEARS = 10 * 365 * 24 * HOUR

# ---------------------------------------------------------------------------
# CacheEntry
# ---------------------------------------------------------------------------


class TestCacheEntry:
    def test_to_dict_omits_empty_fields(self):
        entry = CacheEntry(Status.RED, 10.0)
        assert entry.to_dict() == {"status": "RED", "timestamp": 10.0}

    def test_from_dict_full(self):
        entry = CacheEntry.from_dict(
            {"status": "GREEN", "timestamp": 5, "canonical_url": "https://a.com/x", "record_url": "https://r/1"}
        )
        assert entry is not None
        assert entry.status == Status.GREEN
        assert entry.timestamp == 5.0
        assert entry.canonical_url == "https://a.com/x"
        assert entry.record_url == "https://r/1"

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "GREEN",
            [],
            {},
            {"status": "BLUE", "timestamp": 1},
            {"status": "GRAY", "timestamp": 1},
            {"status": "RED", "timestamp": "yesterday"},
        ],
    )
    def test_from_dict_rejects_garbage(self, raw):
        assert CacheEntry.from_dict(raw) is None

    def test_only_green_expires(self):
        assert CacheEntry(Status.GREEN, 0.0).is_expired(60, 60)
        assert not CacheEntry(Status.GREEN, 0.0).is_expired(60, 59.9)
        assert not CacheEntry(Status.RED, 0.0).is_expired(60, TEN_YEARS)
        assert not CacheEntry(Status.ORANGE, 0.0).is_expired(60, TEN_YEARS)


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------


class TestPutGet:
    async def test_missing(self, cache):
        assert await cache.get("https://a.com/") is None
        assert cache.stats.misses == 1

    async def test_put_then_get(self, cache, clock):
        await cache.put("https://a.com/x", Status.GREEN, canonical_url="https://a.com/x", record_url="https://r/1")
        entry = await cache.get("https://a.com/x")
        assert entry is not None
        assert entry.status == Status.GREEN
        assert entry.timestamp == clock.now
        assert entry.record_url == "https://r/1"
        assert cache.stats.hits == 1
        assert cache.stats.writes == 1

    async def test_stored_under_prefixed_key(self, cache, store):
        await cache.put("https://a.com/x", Status.RED)
        assert store.data[cache_key("https://a.com/x")]["status"] == "RED"
        assert cache_key("u").startswith(KEY_PREFIX)

    async def test_last_write_wins(self, cache, clock):
        await cache.put("https://a.com/x", Status.ORANGE, matching_urls=["https://a.com"])
        clock.advance(5)
        await cache.put("https://a.com/x", Status.RED)
        entry = await cache.get("https://a.com/x")
        assert entry.status == Status.RED
        assert entry.matching_urls == []
        assert entry.timestamp == clock.now

    async def test_gray_not_cacheable(self, cache):
        with pytest.raises(ValueError, match="Cannot cache"):
            await cache.put("https://a.com/x", Status.GRAY)

    async def test_matching_urls_deduplicated(self, cache):
        entry = await cache.put("https://a.com/x", Status.ORANGE, matching_urls=["https://a.com", "https://a.com"])
        assert entry.matching_urls == ["https://a.com"]

    async def test_put_many(self, cache, store):
        urls = ["https://a.com/x", "http://a.com/x", "https://www.a.com/x"]
        assert await cache.put_many(urls, Status.GREEN, canonical_url=urls[0]) == 3
        for url in urls:
            assert store.data[cache_key(url)]["canonical_url"] == urls[0]
        assert await cache.put_many([], Status.GREEN) == 0

    async def test_invalid_entry_is_miss(self, cache, store):
        await store.set({cache_key("https://a.com/"): {"status": "PURPLE"}})
        assert await cache.get("https://a.com/") is None
        assert cache.stats.invalid_entries == 1
        assert cache.stats.misses == 1

    async def test_bulk_get_preserves_order(self, cache):
        await cache.put("https://b.com/", Status.RED)
        result = await cache.bulk_get(["https://c.com/", "https://b.com/", "https://c.com/"])
        assert list(result) == ["https://c.com/", "https://b.com/"]
        assert result["https://c.com/"] is None
        assert result["https://b.com/"].status == Status.RED


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    async def test_green_expires_at_duration(self, cache, clock):
        await cache.put("https://a.com/", Status.GREEN)
        clock.advance(HOUR - 1)
        assert await cache.get("https://a.com/") is not None
        clock.advance(1)
        assert await cache.get("https://a.com/") is None
        assert cache.stats.expirations == 1

    async def test_red_and_orange_never_expire(self, cache, clock):
        await cache.put("https://a.com/r", Status.RED)
        await cache.put("https://a.com/o", Status.ORANGE, matching_urls=["https://a.com"])
        clock.advance(TEN_YEARS)
        assert (await cache.get("https://a.com/r")).status == Status.RED
        assert (await cache.get("https://a.com/o")).status == Status.ORANGE

    async def test_duration_change_applies_to_existing_entries(self, cache, clock):
        await cache.put("https://a.com/", Status.GREEN)
        clock.advance(10 * 60)
        cache.cache_duration = 5
        assert await cache.get("https://a.com/") is None

    @pytest.mark.parametrize("minutes", [0, -1])
    def test_invalid_duration(self, store, minutes):
        with pytest.raises(ValueError):
            ClassificationCache(store, cache_duration=minutes)
        cache = ClassificationCache(store)
        with pytest.raises(ValueError):
            cache.cache_duration = minutes

    async def test_fresh_green_entries(self, cache, clock, store):
        await cache.put("https://old.com/", Status.GREEN)
        clock.advance(HOUR)
        await cache.put("https://new.com/", Status.GREEN, record_url="https://r/2")
        await cache.put("https://red.com/", Status.RED)
        await store.set({"settings": {"database_id": "x"}})
        fresh = await cache.fresh_green_entries()
        assert list(fresh) == ["https://new.com/"]
        assert fresh["https://new.com/"].record_url == "https://r/2"


# ---------------------------------------------------------------------------
# mark_red
# ---------------------------------------------------------------------------


class TestMarkRed:
    async def test_skips_urls_already_red(self, cache, clock):
        await cache.put("https://a.com/1", Status.RED)
        first = clock.now
        clock.advance(30)
        written = await cache.mark_red(["https://a.com/1", "https://a.com/2"])
        assert written == 1
        assert (await cache.get("https://a.com/1")).timestamp == first
        assert (await cache.get("https://a.com/2")).timestamp == clock.now

    async def test_overwrites_other_states(self, cache):
        await cache.put("https://a.com/g", Status.GREEN)
        await cache.put("https://a.com/o", Status.ORANGE)
        assert await cache.mark_red(["https://a.com/g", "https://a.com/o"]) == 2
        assert (await cache.get("https://a.com/g")).status == Status.RED
        assert (await cache.get("https://a.com/o")).status == Status.RED

    async def test_nothing_to_write(self, cache):
        assert await cache.mark_red([]) == 0
        await cache.put("https://a.com/", Status.RED)
        assert await cache.mark_red(["https://a.com/", "https://a.com/"]) == 0


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemoval:
    async def test_remove(self, cache):
        await cache.put("https://a.com/", Status.GREEN)
        assert await cache.remove("https://a.com/") is True
        assert await cache.remove("https://a.com/") is False
        assert await cache.get("https://a.com/") is None

    async def test_clear_keeps_other_keys(self, cache, store):
        await cache.put_many(["https://a.com/", "https://b.com/"], Status.RED)
        await store.set({"settings": {"database_id": "x"}})
        assert await cache.clear() == 2
        assert list(store.data) == ["settings"]


class TestCacheStats:
    def test_hit_rate(self):
        assert CacheStats().hit_rate == 0.0
        assert CacheStats(hits=3, misses=1).hit_rate == 0.75
