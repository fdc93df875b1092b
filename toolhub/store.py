"""Keyed record storage: toolsets, extension state, configured servers, preferences.

Records are JSON objects addressed by (collection, key). Queries are plain
predicates evaluated in Python; collections stay small.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import aiosqlite

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection  TEXT    NOT NULL,
    key         TEXT    NOT NULL,
    value       TEXT    NOT NULL,
    updated_at  REAL    NOT NULL,
    PRIMARY KEY (collection, key)
);
"""


@runtime_checkable
class RecordStore(Protocol):
    """Persistence collaborator used as a key-value store."""

    async def get(self, collection: str, key: str) -> Record | None: ...

    async def set(self, collection: str, key: str, value: Record) -> None: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def list(
        self, collection: str, where: Predicate | None = None
    ) -> list[Record]: ...

    async def close(self) -> None: ...


class SqliteRecordStore:
    """SQLite-backed record store. One connection per instance."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def get(self, collection: str, key: str) -> Record | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "SELECT value FROM records WHERE collection = ? AND key = ?",
            (collection, key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _decode(row[0], collection, key)

    async def set(self, collection: str, key: str, value: Record) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            """
            INSERT INTO records (collection, key, value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(collection, key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (collection, key, json.dumps(value, ensure_ascii=False), time.time()),
        )
        await conn.commit()

    async def delete(self, collection: str, key: str) -> bool:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "DELETE FROM records WHERE collection = ? AND key = ?",
            (collection, key),
        )
        await conn.commit()
        return (cursor.rowcount or 0) > 0

    async def list(self, collection: str, where: Predicate | None = None) -> list[Record]:
        """Return records of a collection in key order, optionally filtered."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "SELECT key, value FROM records WHERE collection = ? ORDER BY key",
            (collection,),
        )
        rows = await cursor.fetchall()
        result: list[Record] = []
        for key, raw in rows:
            record = _decode(raw, collection, key)
            if record is None:
                continue
            if where is None or where(record):
                result.append(record)
        return result


class MemoryRecordStore:
    """In-process record store for embedding and tests."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = {}

    async def get(self, collection: str, key: str) -> Record | None:
        raw = self._data.get(collection, {}).get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, collection: str, key: str, value: Record) -> None:
        # Serialize on write so callers never share mutable state with the store.
        self._data.setdefault(collection, {})[key] = json.dumps(value)

    async def delete(self, collection: str, key: str) -> bool:
        return self._data.get(collection, {}).pop(key, None) is not None

    async def list(self, collection: str, where: Predicate | None = None) -> list[Record]:
        items = sorted(self._data.get(collection, {}).items())
        records = [json.loads(raw) for _, raw in items]
        return [r for r in records if where is None or where(r)]

    async def close(self) -> None:
        pass


def _decode(raw: str, collection: str, key: str) -> Record | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("store: corrupt record %s/%s skipped", collection, key)
        return None
    return value if isinstance(value, dict) else None
