# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Service facade: wires cache, engine, sync, timers, and status board.

What the UI collaborator talks to:

- ``on_navigation(session_id, url)``: cache-only check + auto-check reset
- ``check(url)``: reconciled check
- ``clear_cache(url)`` / ``clear_all()`` / ``full_sync()`` / ``delta_sync()``
- ``reschedule_sync()``: (re)register the periodic delta sync
- ``save_settings(**changes)``: persist settings, full sync or reschedule as needed
- ``login(token)`` / ``logout()``

Auto-check: after ``auto_check_delay`` seconds on the same URL, a
reconciled check runs when the current state is GRAY or a color enabled in
``auto_check_states``.  It is skipped when the session has navigated
elsewhere or the URL is domain-excluded.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from . import EXCLUDED_TEXT, ClassificationResult, Status
from .cache import ClassificationCache
from .config import Settings, SettingsStore
from .engine import ClassificationEngine
from .errors import AuthError, UrlStatusError
from .kvstore import KVStoreProtocol
from .logging_config import bound_session
from .lookup import LookupServiceProtocol
from .rules import is_excluded
from .scheduler import DelayedTasks, PeriodicScheduler
from .status import StatusBoard
from .sync import SyncReconciler, SyncResult

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"

# Changing any of these points the cache at different records.
_SOURCE_FIELDS = ("database_id", "property_name", "last_edited_property_name")
_SCHEDULE_FIELDS = ("cache_duration", "sync_interval")


@dataclass(frozen=True, slots=True)
class SavedSettings:
    """Outcome of ``UrlStatusService.save_settings``."""

    settings: Settings
    full_sync: SyncResult | None = None
    sync_interval: float | None = None
    rescheduled: bool = False

    def to_dict(self) -> dict:
        return {
            "full_sync": self.full_sync.to_dict() if self.full_sync is not None else None,
            "rescheduled": self.rescheduled,
            "sync_interval": self.sync_interval,
        }


def _changed(before: Settings | None, after: Settings, fields: tuple[str, ...]) -> bool:
    return before is None or any(getattr(before, f) != getattr(after, f) for f in fields)


class UrlStatusService:
    """One engine instance plus its timers, bound to a KV store and Lookup Service."""

    def __init__(
        self,
        store: KVStoreProtocol,
        lookup: LookupServiceProtocol,
        *,
        settings_store: SettingsStore | None = None,
        status: StatusBoard | None = None,
        scheduler: PeriodicScheduler | None = None,
        delayed: DelayedTasks | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.lookup = lookup
        self.settings_store = settings_store or SettingsStore(store)
        self.status = status or StatusBoard(store)
        self.cache = ClassificationCache(store, clock=clock)
        self.engine = ClassificationEngine(self.cache, lookup, self.settings_store, sink=self.status)
        self.sync = SyncReconciler(store, self.cache, lookup, self.settings_store, sink=self.status, clock=clock)
        self.scheduler = scheduler or PeriodicScheduler()
        self.delayed = delayed or DelayedTasks()
        self._sessions: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

    # -- Lifecycle --

    async def __aenter__(self) -> UrlStatusService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def start(self) -> None:
        await self.reschedule_sync()

    async def shutdown(self) -> None:
        """Cancel timers and background syncs."""
        await self.delayed.shutdown()
        await self.scheduler.shutdown()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()

    async def _settings_or_none(self) -> Settings | None:
        try:
            return await self.settings_store.load()
        except UrlStatusError as e:
            logger.warning("Cannot load settings: %s", e)
            return None

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- Classification --

    async def on_navigation(self, session_id: str, url: str) -> ClassificationResult | None:
        """Passive navigation: cache-only classification, then restart auto-check."""
        self._sessions[session_id] = url
        with bound_session(session_id):
            result = await self.engine.cache_only(url)
            await self.reset_auto_check(session_id, url)
        return result

    async def check(self, url: str, *, session_id: str | None = None) -> ClassificationResult | None:
        """Explicit re-check against the Lookup Service."""
        result = await self.engine.reconcile(url)
        if session_id is not None and self._sessions.get(session_id) == url:
            await self.reset_auto_check(session_id, url)
        return result

    async def reset_auto_check(self, session_id: str, url: str) -> bool:
        """Cancel the session's pending auto-check and start a new one if enabled."""
        self.delayed.cancel(session_id)
        settings = await self._settings_or_none()
        if settings is None or not settings.auto_check_enabled or not url:
            return False
        self.delayed.schedule(
            session_id,
            settings.auto_check_delay,
            functools.partial(self._auto_check, session_id, url),
        )
        logger.debug("Auto-check in %.1fs for session %s: %s", settings.auto_check_delay, session_id, url)
        return True

    async def _auto_check(self, session_id: str, url: str) -> None:
        current_url = self._sessions.get(session_id)
        if current_url != url:
            logger.info("Auto-check canceled: session %s moved from %s to %s", session_id, url, current_url)
            return
        current = self.status.latest(url)
        if current is not None and current.domain_excluded:
            logger.info("Auto-check skipped: %s is excluded by domain rules", url)
            return
        state = current.state if current is not None else Status.GRAY
        settings = await self._settings_or_none()
        if settings is None or not settings.auto_check_states.allows(state):
            logger.debug("Auto-check skipped for %s in state %s", url, state.value)
            return
        logger.info("Auto-check running for %s (state %s)", url, state.value)
        await self.engine.reconcile(url)

    def close_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self.delayed.cancel(session_id)

    # -- Maintenance --

    async def clear_cache(self, url: str) -> bool:
        return await self.engine.clear_cache(url)

    async def clear_all(self) -> int:
        """Remove every cache entry and the last sync time."""
        removed = await self.engine.clear_all()
        await self.sync.reset()
        return removed

    async def full_sync(self) -> SyncResult:
        return await self.sync.full_sync()

    async def delta_sync(self) -> SyncResult:
        return await self.sync.delta_sync()

    async def reschedule_sync(self) -> float | None:
        """Register the periodic delta sync.  Returns the interval in minutes.

        Not configured or awaiting re-login → no schedule (None).  Without a
        previous sync, a full sync starts in the background.
        """
        settings = await self._settings_or_none()
        if settings is None or not settings.is_configured:
            self.scheduler.cancel(SYNC_JOB)
            logger.warning("Sync not scheduled: settings incomplete")
            return None
        if await self.settings_store.needs_authentication():
            self.scheduler.cancel(SYNC_JOB)
            logger.warning("Sync not scheduled: re-authentication required")
            return None
        minutes = settings.effective_sync_interval
        self.scheduler.register(SYNC_JOB, minutes * 60, self.sync.delta_sync)
        logger.info("Sync scheduled every %.1f minutes", minutes)
        if await self.sync.last_sync_timestamp() is None:
            logger.info("No previous sync, starting initial full sync")
            self._spawn(self.sync.full_sync(), "initial-full-sync")
        return minutes

    async def save_settings(self, **changes: Any) -> SavedSettings:
        """Persist *changes* and bring the sync schedule in line with them.

        A new database or property runs a full sync right away; a new cache
        duration or sync interval only reschedules the periodic sync.

        Raises:
            ConfigurationError: If the changes do not validate (nothing is saved).
        """
        before = await self._settings_or_none()
        settings = await self.settings_store.update(**changes)
        logger.info("Settings saved: %s", ", ".join(sorted(changes)) or "no changes")
        if _changed(before, settings, _SOURCE_FIELDS) and settings.is_configured:
            logger.info("Record source changed, running full sync")
            result = await self.sync.full_sync()
            minutes = await self.reschedule_sync()
            return SavedSettings(settings, full_sync=result, sync_interval=minutes, rescheduled=True)
        if _changed(before, settings, _SCHEDULE_FIELDS):
            minutes = await self.reschedule_sync()
            return SavedSettings(settings, sync_interval=minutes, rescheduled=True)
        return SavedSettings(settings)

    # -- Queries --

    async def is_excluded(self, url: str) -> bool:
        """Rule-only check.  An excluded URL also becomes the current status."""
        settings = await self._settings_or_none()
        excluded = settings is not None and is_excluded(url, settings.rules())
        if excluded:
            await self.status.publish(
                ClassificationResult(url=url, state=Status.GRAY, text=EXCLUDED_TEXT, domain_excluded=True)
            )
        return excluded

    async def get_status(self, url: str | None = None) -> ClassificationResult:
        return await self.status.get_status(url)

    # -- Credentials --

    async def login(self, token: str) -> dict:
        """Store *token*, verify it against the record store, clear the re-auth flag.

        Raises:
            AuthError: If the record store rejects the token (it is not kept).
        """
        await self.settings_store.update(integration_token=token.strip())
        verify = getattr(self.lookup, "verify_token", None)
        user: dict = {}
        if verify is not None:
            try:
                user = await verify()
            except AuthError:
                await self.settings_store.clear_credentials()
                raise
        await self.settings_store.set_needs_authentication(False)
        logger.info("Logged in to record store")
        await self.reschedule_sync()
        return user

    async def logout(self) -> int:
        """Forget credentials, cached classifications, and sync state."""
        await self.settings_store.clear_credentials()
        self.scheduler.cancel(SYNC_JOB)
        removed = await self.clear_all()
        logger.info("Logged out; %d cache entries removed", removed)
        return removed
