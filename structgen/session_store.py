"""
Session store: keyed per-session state behind a swappable interface.
======================================================================
The budget ledger keeps its per-session counters here instead of in a
module-level map.

InMemorySessionStore
    Default. A plain dict inside the current process. NOT shared between
    processes: two workers behind a load balancer each see their own
    counters.

SqliteSessionStore
    aiosqlite-backed store (WAL mode) for deployments where several
    processes on one host must see the same counters. Values are stored
    as JSON. increment() runs inside a BEGIN IMMEDIATE transaction, so
    concurrent writers on the same file serialize on SQLite's write lock.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger("structgen.session_store")

DEFAULT_STORE_PATH = Path.home() / ".structgen" / "sessions.db"


class SessionStore(ABC):
    """Async get/set/delete over JSON-compatible values keyed by session id."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    @abstractmethod
    async def increment(self, key: str, field: str, amount: int) -> tuple[int, int]:
        """
        Atomically add ``amount`` to the integer ``field`` of the dict stored
        under ``key`` (missing key or field counts as 0).

        Returns (before, after).
        """

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """Process-local store. Returns copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    async def increment(self, key: str, field: str, amount: int) -> tuple[int, int]:
        # no await between read and write
        value = self._data.setdefault(key, {})
        before = int(value.get(field, 0))
        value[field] = before + amount
        return before, before + amount


class SqliteSessionStore(SessionStore):
    def __init__(self, db_path: Path = DEFAULT_STORE_PATH, busy_timeout: float = 30.0):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._busy_timeout = busy_timeout
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # lazy: created inside event loop
        self._write_lock: Optional[asyncio.Lock] = None

    async def _get_conn(self) -> aiosqlite.Connection:
        """Return persistent connection, initializing schema once."""
        if self._lock is None:
            self._lock = asyncio.Lock()
            self._write_lock = asyncio.Lock()
        if self._conn is None:
            async with self._lock:
                if self._conn is None:
                    # autocommit; multi-statement writes open their own transaction
                    conn = await aiosqlite.connect(
                        self._db_path, timeout=self._busy_timeout, isolation_level=None,
                    )
                    await conn.execute("PRAGMA journal_mode=WAL")
                    await conn.execute("""
                        CREATE TABLE IF NOT EXISTS sessions (
                            key        TEXT PRIMARY KEY,
                            value      TEXT NOT NULL,
                            updated_at REAL NOT NULL
                        )
                    """)
                    self._conn = conn
                    logger.debug("Session store connection established, schema ready")
        return self._conn

    async def get(self, key: str) -> Optional[Any]:
        db = await self._get_conn()
        async with db.execute("SELECT value FROM sessions WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def set(self, key: str, value: Any) -> None:
        db = await self._get_conn()
        async with self._write_lock:
            await db.execute(
                "INSERT OR REPLACE INTO sessions (key, value, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), time.time()),
            )

    async def delete(self, key: str) -> None:
        db = await self._get_conn()
        async with self._write_lock:
            await db.execute("DELETE FROM sessions WHERE key = ?", (key,))

    async def keys(self) -> list[str]:
        db = await self._get_conn()
        async with db.execute("SELECT key FROM sessions ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return [r[0] for r in rows]

    async def increment(self, key: str, field: str, amount: int) -> tuple[int, int]:
        db = await self._get_conn()
        # The write lock keeps other coroutines off this connection mid-transaction;
        # BEGIN IMMEDIATE takes SQLite's write lock against other connections.
        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT value FROM sessions WHERE key = ?", (key,)
                ) as cursor:
                    row = await cursor.fetchone()
                value = json.loads(row[0]) if row else {}
                before = int(value.get(field, 0))
                value[field] = before + amount
                await db.execute(
                    "INSERT OR REPLACE INTO sessions (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, json.dumps(value), time.time()),
                )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return before, before + amount

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug("Session store connection closed")
