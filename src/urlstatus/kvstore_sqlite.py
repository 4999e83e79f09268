# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SQLite-backed key/value store: persistent cache, settings, and sync state.

Uses ``aiosqlite`` with a single long-lived connection.  WAL journal mode
enables concurrent reads with serialized writes.  Schema versioned via ``PRAGMA user_version``.  Values are stored
as JSON text.

Dependencies: kvstore.py (KVStoreProtocol semantics).
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Mapping
from contextlib import suppress
from pathlib import Path
from typing import Any

import aiosqlite

_SCHEMA_VERSION = 1

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds
_MAX_PARAMS = 500


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_CREATE_KV = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL
)
"""


def _chunks(keys: list[str], size: int = _MAX_PARAMS) -> Iterable[list[str]]:
    for i in range(0, len(keys), size):
        yield keys[i : i + size]


# ---------------------------------------------------------------------------
# SqliteKVStore
# ---------------------------------------------------------------------------


class SqliteKVStore:
    """SQLite-backed store implementing ``KVStoreProtocol``.

    Use the ``create()`` async classmethod factory, never instantiate directly.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    @classmethod
    async def create(cls, db_path: str | Path) -> SqliteKVStore:
        """Open (or create) a SQLite database and initialise the schema.

        Resolves ``~`` and creates parent directories automatically.

        Raises:
            ValueError: If the existing database has a newer schema version.
        """
        path = Path(db_path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(str(path))
        try:
            await db.execute("PRAGMA journal_mode = WAL")

            cursor = await db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > _SCHEMA_VERSION:
                raise ValueError(
                    f"Database schema version {current_version} is newer than supported version {_SCHEMA_VERSION}"
                )

            if current_version < _SCHEMA_VERSION:
                await db.execute(_CREATE_KV)
                await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
                await db.commit()
        except BaseException:
            await db.close()
            raise

        return cls(db)

    # ── KVStoreProtocol methods ───────────────────────────────────

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for *keys*; missing keys are omitted."""
        result: dict[str, Any] = {}
        for chunk in _chunks(list(dict.fromkeys(keys))):
            placeholders = ",".join("?" * len(chunk))
            cursor = await self._db.execute(f"SELECT key, value FROM kv WHERE key IN ({placeholders})", chunk)  # noqa: S608  # nosec B608
            for key, value in await cursor.fetchall():
                result[key] = json.loads(value)
        return result

    async def set(self, items: Mapping[str, Any]) -> None:
        """Store or replace every item in one commit."""
        if not items:
            return
        now = time.time()
        await self._db.executemany(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            [(key, json.dumps(value), now) for key, value in items.items()],
        )
        await self._db.commit()

    async def remove(self, keys: Iterable[str]) -> None:
        """Delete *keys*; unknown keys are ignored."""
        keys = list(keys)
        if not keys:
            return
        for chunk in _chunks(keys):
            placeholders = ",".join("?" * len(chunk))
            await self._db.execute(f"DELETE FROM kv WHERE key IN ({placeholders})", chunk)  # noqa: S608  # nosec B608
        await self._db.commit()

    async def scan(self, prefix: str) -> dict[str, Any]:
        """Return every item whose key starts with *prefix*."""
        cursor = await self._db.execute(
            "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        rows = await cursor.fetchall()
        return {key: json.loads(value) for key, value in rows}

    async def close(self) -> None:
        """Close the database connection. Idempotent."""
        with suppress(Exception):
            await self._db.close()
