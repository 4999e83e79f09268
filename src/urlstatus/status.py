# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Status sink: where classification results are published.

``StatusBoard`` keeps the most recent result overall (persisted in the KV
store under ``current_status`` for other processes to read) plus a bounded
per-URL view used by auto-check to decide whether a re-check is due.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Protocol, runtime_checkable

from . import ClassificationResult, Status
from .kvstore import KVStoreProtocol

logger = logging.getLogger(__name__)

CURRENT_STATUS_KEY = "current_status"
_MAX_TRACKED_URLS = 256


@runtime_checkable
class StatusSink(Protocol):
    async def publish(self, result: ClassificationResult) -> None: ...


class StatusBoard:
    """In-memory + KV-backed record of published results."""

    def __init__(self, store: KVStoreProtocol | None = None, *, max_urls: int = _MAX_TRACKED_URLS) -> None:
        self._store = store
        self._max_urls = max_urls
        self._current: ClassificationResult | None = None
        self._by_url: OrderedDict[str, ClassificationResult] = OrderedDict()
        self.history: list[ClassificationResult] = []

    async def publish(self, result: ClassificationResult) -> None:
        self._current = result
        self._by_url[result.url] = result
        self._by_url.move_to_end(result.url)
        while len(self._by_url) > self._max_urls:
            self._by_url.popitem(last=False)
        self.history.append(result)
        del self.history[: -self._max_urls]
        logger.debug("Status %s for %s: %s", result.state.value, result.url, result.text)
        if self._store is not None:
            await self._store.set({CURRENT_STATUS_KEY: result.to_dict()})

    def latest(self, url: str) -> ClassificationResult | None:
        """Most recent result published for *url* in this process."""
        return self._by_url.get(url)

    async def get_status(self, url: str | None = None) -> ClassificationResult:
        """Latest result (for *url* when given), or GRAY "Status not available"."""
        if url is not None:
            found = self._by_url.get(url)
            if found is not None:
                return found
        elif self._current is not None:
            return self._current

        if self._store is not None:
            raw = (await self._store.get([CURRENT_STATUS_KEY])).get(CURRENT_STATUS_KEY)
            if isinstance(raw, dict):
                try:
                    stored = ClassificationResult.from_dict(raw)
                except ValueError:
                    logger.warning("Ignoring unreadable stored status: %r", raw)
                else:
                    if url is None or stored.url == url:
                        return stored
        return ClassificationResult(url=url or "", state=Status.GRAY, text="Status not available")
