# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Lookup Service abstraction: batched existence and change queries.

The record store is only reachable through paginated, rate-limited
queries.  ``LookupServiceProtocol`` captures the three queries the engine
and the sync reconciler need; ``notion.NotionLookupService`` is the real
implementation and ``InMemoryLookupService`` backs tests and dry runs.

Failures raise ``LookupServiceError`` (``AuthError`` for HTTP 401,
``TransientNetworkError`` for transport failures).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

# OR-filter width: URLs per existence query
MAX_FILTER_URLS = 100

# Records per page for paginated queries
PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class Record:
    """One stored record as seen by the engine."""

    url: str  # value of the URL property (may be empty)
    record_url: str = ""  # link to the record itself
    record_id: str = ""
    last_edited: float | None = None  # epoch seconds


@dataclass(frozen=True, slots=True)
class RecordPage:
    """One page of a paginated query."""

    records: list[Record] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


def chunked(items: Sequence[str], size: int = MAX_FILTER_URLS) -> Iterator[list[str]]:
    """Split *items* into lists of at most *size* elements."""
    if size <= 0:
        raise ValueError(f"size must be > 0, got {size}")
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LookupServiceProtocol(Protocol):
    """Interface for the remote record store."""

    async def query_exists(self, urls: Sequence[str]) -> list[Record]:
        """Records whose URL property equals any of *urls* (OR filter)."""
        ...

    async def query_all(self, cursor: str | None = None) -> RecordPage:
        """One page of every record in the store."""
        ...

    async def query_modified_since(self, since: float, cursor: str | None = None) -> RecordPage:
        """One page of records last edited at or after *since* (epoch seconds)."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryLookupService:
    """List-backed record store.  Counts queries so tests can assert round trips."""

    def __init__(self, records: Iterable[Record] = (), *, page_size: int = PAGE_SIZE) -> None:
        self.records: list[Record] = list(records)
        self.page_size = page_size
        self.exists_queries: list[list[str]] = []
        self.page_queries = 0
        self.fail_with: Exception | None = None

    def add(self, url: str, *, record_url: str = "", last_edited: float | None = None) -> Record:
        record = Record(
            url=url,
            record_url=record_url or f"https://records.test/{len(self.records) + 1}",
            record_id=str(len(self.records) + 1),
            last_edited=last_edited,
        )
        self.records.append(record)
        return record

    def _check_failure(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _page(self, records: list[Record], cursor: str | None) -> RecordPage:
        start = int(cursor) if cursor else 0
        end = start + self.page_size
        has_more = end < len(records)
        return RecordPage(records=records[start:end], has_more=has_more, next_cursor=str(end) if has_more else None)

    async def query_exists(self, urls: Sequence[str]) -> list[Record]:
        self._check_failure()
        found: list[Record] = []
        for chunk in chunked(list(urls)):
            self.exists_queries.append(chunk)
            wanted = set(chunk)
            found.extend(r for r in self.records if r.url and r.url in wanted)
        return found

    async def query_all(self, cursor: str | None = None) -> RecordPage:
        self._check_failure()
        self.page_queries += 1
        return self._page(self.records, cursor)

    async def query_modified_since(self, since: float, cursor: str | None = None) -> RecordPage:
        self._check_failure()
        self.page_queries += 1
        changed = [r for r in self.records if r.last_edited is not None and r.last_edited >= since]
        return self._page(changed, cursor)

    async def verify_token(self) -> dict:
        self._check_failure()
        return {"object": "user", "name": "in-memory"}
