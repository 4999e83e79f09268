# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Explicit asyncio timers: periodic jobs and keyed one-shot delays.

- ``PeriodicScheduler``: named jobs firing every *interval* seconds.
  Re-registering a name replaces the prior schedule.  A callback that
  raises is logged and the loop keeps going; a loop that dies anyway is
  restarted from its ``done_callback`` (same crash-restart pattern as a
  reaper task, NOT TaskGroup).
- ``DelayedTasks``: debounce timers keyed by session.  Scheduling a key
  cancels the pending task for that key.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class _Job:
    name: str
    interval: float
    callback: Callback
    run_immediately: bool = False
    task: asyncio.Task | None = None
    runs: int = 0
    failures: int = 0


# ---------------------------------------------------------------------------
# PeriodicScheduler
# ---------------------------------------------------------------------------


class PeriodicScheduler:
    """Named periodic callbacks on the running event loop."""

    def __init__(self) -> None:
        self._jobs: dict[str, _Job] = {}

    async def __aenter__(self) -> PeriodicScheduler:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def register(self, name: str, interval: float, callback: Callback, *, run_immediately: bool = False) -> None:
        """Fire *callback* every *interval* seconds, replacing any job called *name*.

        Must be called from within a running event loop.
        """
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.cancel(name)
        job = _Job(name=name, interval=interval, callback=callback, run_immediately=run_immediately)
        self._jobs[name] = job
        self._start(job)
        logger.debug("Scheduled %s every %.1fs", name, interval)

    def cancel(self, name: str) -> bool:
        """Stop the job called *name*.  Returns True when one was registered."""
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        if job.task is not None and not job.task.done():
            job.task.cancel()
        return True

    def interval(self, name: str) -> float | None:
        job = self._jobs.get(name)
        return job.interval if job is not None else None

    def runs(self, name: str) -> int:
        job = self._jobs.get(name)
        return job.runs if job is not None else 0

    @property
    def names(self) -> list[str]:
        return list(self._jobs)

    async def shutdown(self) -> None:
        """Cancel every job and wait for the loops to exit."""
        jobs = list(self._jobs.values())
        self._jobs.clear()
        for job in jobs:
            if job.task is not None and not job.task.done():
                job.task.cancel()
        for job in jobs:
            if job.task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await job.task

    # -- Internal --

    def _start(self, job: _Job) -> None:
        job.task = asyncio.get_running_loop().create_task(self._loop(job), name=f"periodic:{job.name}")
        job.task.add_done_callback(functools.partial(self._loop_done, job))

    def _loop_done(self, job: _Job, task: asyncio.Task) -> None:
        """Restart the loop if it crashed (not cancelled, still registered)."""
        if task.cancelled() or self._jobs.get(job.name) is not job:
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Periodic job %s crashed, restarting: %s", job.name, exc)
            job.run_immediately = False
            with contextlib.suppress(RuntimeError):
                self._start(job)

    async def _loop(self, job: _Job) -> None:
        if job.run_immediately:
            await self._fire(job)
        while True:
            await asyncio.sleep(job.interval)
            await self._fire(job)

    async def _fire(self, job: _Job) -> None:
        job.runs += 1
        try:
            await job.callback()
        except Exception:
            job.failures += 1
            logger.exception("Periodic job %s failed", job.name)


# ---------------------------------------------------------------------------
# DelayedTasks
# ---------------------------------------------------------------------------


class DelayedTasks:
    """One pending delayed callback per key."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: Callback) -> asyncio.Task:
        """Run *callback* after *delay* seconds, cancelling any pending task for *key*."""
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback), name=f"delayed:{key}")
        self._tasks[key] = task
        task.add_done_callback(functools.partial(self._forget, key))
        return task

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _run(self, key: str, delay: float, callback: Callback) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except Exception:
            logger.exception("Delayed task %s failed", key)
