# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Full and delta sync: rebuild the cache from the record store.

``full_sync`` pages through every record; ``delta_sync`` only through
records edited at or after ``last_sync_timestamp`` (falling back to a full
sync when there is none).  For every record with a URL, the URL and each of
its variants are written GREEN with the record URL as canonical.

Delta sync cannot see deletions: a deleted record's GREEN entries expire
and the next reconciled check flips them to RED.

Errors never propagate: they come back in ``SyncResult`` and leave
``last_sync_timestamp`` untouched so the next attempt covers the same
window.  Syncs are serialized against each other; they interleave freely
with engine reconciliation (per-URL last write wins).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from . import ClassificationResult, Status
from .cache import ClassificationCache
from .config import SettingsStore
from .errors import AuthError, ConfigurationError, LookupServiceError
from .kvstore import KVStoreProtocol
from .lookup import LookupServiceProtocol, RecordPage
from .status import StatusSink
from .variants import generate_variants

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_timestamp"

# Upper bound on pages per sync (100 records each)
MAX_PAGES = 10_000


class SyncMode(StrEnum):
    FULL = "full"
    DELTA = "delta"


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one sync run."""

    success: bool
    mode: SyncMode
    records_processed: int = 0
    urls_updated: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        data: dict = {
            "success": self.success,
            "mode": self.mode.value,
            "records_processed": self.records_processed,
            "urls_updated": self.urls_updated,
        }
        if self.error:
            data["error"] = self.error
        return data


class SyncReconciler:
    """Keeps the cache consistent with the record store."""

    def __init__(
        self,
        store: KVStoreProtocol,
        cache: ClassificationCache,
        lookup: LookupServiceProtocol,
        settings_store: SettingsStore,
        *,
        sink: StatusSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cache = cache
        self._lookup = lookup
        self._settings_store = settings_store
        self._sink = sink
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def last_sync_timestamp(self) -> float | None:
        raw = (await self._store.get([LAST_SYNC_KEY])).get(LAST_SYNC_KEY)
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s value %r", LAST_SYNC_KEY, raw)
            return None

    async def reset(self) -> None:
        """Forget the last sync time so the next delta sync runs in full."""
        await self._store.remove([LAST_SYNC_KEY])

    # -- Public API --

    async def full_sync(self) -> SyncResult:
        async with self._lock:
            return await self._guarded(SyncMode.FULL, self._full)

    async def delta_sync(self) -> SyncResult:
        async with self._lock:
            since = await self.last_sync_timestamp()
            if since is None:
                logger.info("No previous sync timestamp, running full sync instead of delta")
                return await self._guarded(SyncMode.FULL, self._full)
            return await self._guarded(SyncMode.DELTA, lambda: self._delta(since))

    # -- Internals --

    async def _guarded(self, mode: SyncMode, run: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        started = time.monotonic()
        try:
            result = await run()
        except AuthError as e:
            await self._on_auth_failure(e)
            return SyncResult(success=False, mode=mode, error=str(e))
        except ConfigurationError as e:
            logger.warning("%s sync skipped: %s", mode.value, e)
            return SyncResult(success=False, mode=mode, error=str(e))
        except LookupServiceError as e:
            logger.error("%s sync failed: %s", mode.value, e)
            return SyncResult(success=False, mode=mode, error=str(e))
        except Exception as e:
            logger.exception("%s sync failed unexpectedly", mode.value)
            return SyncResult(success=False, mode=mode, error=str(e) or type(e).__name__)
        logger.info(
            "%s sync complete: %d records, %d URLs updated in %.1fs",
            mode.value,
            result.records_processed,
            result.urls_updated,
            time.monotonic() - started,
        )
        return result

    async def _on_auth_failure(self, error: AuthError) -> None:
        logger.error("Authentication failed during sync (%s); clearing credentials", error)
        try:
            await self._settings_store.clear_credentials()
            await self._settings_store.set_needs_authentication(True)
            if self._sink is not None:
                await self._sink.publish(
                    ClassificationResult(
                        url="",
                        state=Status.GRAY,
                        text="Authentication failed during sync.",
                        error=str(error),
                        needs_authentication=True,
                    )
                )
        except Exception:
            logger.exception("Failed to record authentication failure after sync")

    async def _require_authenticated(self) -> None:
        if await self._settings_store.needs_authentication():
            raise ConfigurationError("Re-authentication required before syncing")

    async def _apply(self, page: RecordPage) -> tuple[int, int]:
        """Write GREEN for every record URL and its variants."""
        records = 0
        updated = 0
        for record in page.records:
            if not record.url:
                continue
            records += 1
            urls = list(dict.fromkeys([record.url, *generate_variants(record.url)]))
            updated += await self._cache.put_many(
                urls,
                Status.GREEN,
                canonical_url=record.url,
                record_url=record.record_url,
            )
        return records, updated

    async def _paginate(self, fetch: Callable[[str | None], Awaitable[RecordPage]]) -> tuple[int, int]:
        cursor: str | None = None
        records = 0
        updated = 0
        for page_number in range(1, MAX_PAGES + 1):
            page = await fetch(cursor)
            r, u = await self._apply(page)
            records += r
            updated += u
            logger.debug("Sync page %d: %d records", page_number, len(page.records))
            if not page.has_more:
                return records, updated
            if not page.next_cursor:
                raise LookupServiceError("Record store reported more pages but no cursor")
            cursor = page.next_cursor
        raise LookupServiceError(f"Sync aborted after {MAX_PAGES} pages")

    async def _full(self) -> SyncResult:
        settings = await self._settings_store.load()
        settings.require_configured()
        await self._require_authenticated()
        self._cache.cache_duration = settings.cache_duration
        logger.info("Starting full sync")
        records, updated = await self._paginate(self._lookup.query_all)
        await self._store.set({LAST_SYNC_KEY: self._clock()})
        return SyncResult(success=True, mode=SyncMode.FULL, records_processed=records, urls_updated=updated)

    async def _delta(self, since: float) -> SyncResult:
        settings = await self._settings_store.load()
        settings.require_configured()
        await self._require_authenticated()
        if not settings.last_edited_property_name:
            raise ConfigurationError("Delta sync requires last_edited_property_name")
        self._cache.cache_duration = settings.cache_duration
        started = self._clock()
        logger.info("Starting delta sync from %s", since)
        records, updated = await self._paginate(lambda cursor: self._lookup.query_modified_since(since, cursor))
        await self._store.set({LAST_SYNC_KEY: started})
        return SyncResult(success=True, mode=SyncMode.DELTA, records_processed=records, urls_updated=updated)

