# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Key/value store abstraction: protocol-based persistence layer.

Defines ``KVStoreProtocol`` (batch get/set/remove plus prefix scan) and
``InMemoryKVStore`` for tests and one-shot CLI runs.  ``SqliteKVStore`` in
``kvstore_sqlite.py`` is the persistent implementation.

Semantics: no transactions, last write wins per key.  Values must be
JSON-compatible; they are copied on the way in and out so callers never
share mutable state with the store.

Leaf module (no urlstatus imports).
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class KVStoreProtocol(Protocol):
    """Interface for key/value persistence, in-memory or SQLite."""

    async def get(self, keys: Iterable[str]) -> dict[str, Any]: ...

    async def set(self, items: Mapping[str, Any]) -> None: ...

    async def remove(self, keys: Iterable[str]) -> None: ...

    async def scan(self, prefix: str) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def _copy(value: Any) -> Any:
    """JSON round-trip: rejects non-serializable values, detaches mutables."""
    return json.loads(json.dumps(value))


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryKVStore:
    """Dict-backed store.  Suitable for tests where persistence is not required."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = {k: _copy(v) for k, v in (initial or {}).items()}

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for *keys*; missing keys are omitted."""
        return {k: _copy(self._data[k]) for k in keys if k in self._data}

    async def set(self, items: Mapping[str, Any]) -> None:
        """Store every item, overwriting existing values."""
        for key, value in items.items():
            self._data[key] = _copy(value)

    async def remove(self, keys: Iterable[str]) -> None:
        """Delete *keys*; unknown keys are ignored."""
        for key in keys:
            self._data.pop(key, None)

    async def scan(self, prefix: str) -> dict[str, Any]:
        """Return every item whose key starts with *prefix*."""
        return {k: _copy(v) for k, v in self._data.items() if k.startswith(prefix)}

    async def close(self) -> None:
        """No-op for in-memory store."""

    # ── Convenience accessors (not part of Protocol) ──────────────

    @property
    def data(self) -> dict[str, Any]:
        """Direct access to the backing dict (testing/debugging)."""
        return self._data

    def __len__(self) -> int:
        return len(self._data)
