"""
Local Store adapters.

MemoryLocalStore keeps bytes in a dict (tests, ephemeral sessions).
SqliteLocalStore is the durable on-device store, an async key/value table
on aiosqlite.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class MemoryLocalStore:
    """Dict-backed LocalStore."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class SqliteLocalStore:
    """
    Async SQLite key/value store.

    Async: All I/O operations are async with aiosqlite
    Resilient: One shared connection, writes serialized by a lock
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create a shared connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(str(self.db_path))
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create schema if not exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            conn = await self._get_connection()
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            await conn.commit()
            logger.info(f"Initialized local store at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def get(self, key: str) -> Optional[bytes]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return bytes(row["value"]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """,
                (key, bytes(value), time.time()),
            )
            await conn.commit()

    async def delete(self, key: str) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            await conn.commit()

    async def list_keys(self, prefix: str) -> List[str]:
        conn = await self._get_connection()
        # substr comparison keeps "_" and "%" in prefixes literal
        cursor = await conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        rows = await cursor.fetchall()
        return [r["key"] for r in rows]
