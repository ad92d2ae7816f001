from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Iterable

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    phone TEXT,
    is_renter INTEGER NOT NULL DEFAULT 1,
    is_owner INTEGER NOT NULL DEFAULT 0,
    plan TEXT NOT NULL DEFAULT 'basic',
    subscription_status TEXT NOT NULL DEFAULT 'inactive',
    start_date TEXT,
    end_date TEXT,
    payment_method_id TEXT,
    pending_ref TEXT,
    pending_amount INTEGER,
    pending_plan TEXT,
    pending_method TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS users_pending_ref ON users (pending_ref);

CREATE TABLE IF NOT EXISTS listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL REFERENCES users (id),
    title TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    is_featured INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    ranking INTEGER NOT NULL DEFAULT 0,
    boost_start TEXT,
    boost_expiry TEXT
);

CREATE TABLE IF NOT EXISTS bills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_ref TEXT NOT NULL UNIQUE,
    user_id INTEGER REFERENCES users (id),
    payer_phone TEXT,
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    payment_method TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    done INTEGER NOT NULL DEFAULT 0,
    activation_applied INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    request_snapshot TEXT,
    callback_snapshot TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_checked_at TEXT
);

CREATE INDEX IF NOT EXISTS bills_open ON bills (done, last_checked_at);

CREATE TABLE IF NOT EXISTS user_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    activity_type TEXT NOT NULL,
    details TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


class Connection:
    """Statement runner bound to an open aiosqlite connection."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def execute(self, sql: str, *params: Any) -> None:
        await self.execute_with_rowcount(sql, *params)

    async def execute_with_rowcount(self, sql: str, *params: Any) -> int:
        async with self._conn.execute(sql, params) as cursor:
            return cursor.rowcount

    async def insert(self, sql: str, *params: Any) -> int:
        async with self._conn.execute(sql, params) as cursor:
            return cursor.lastrowid

    async def fetchone(self, sql: str, *params: Any) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, *params: Any) -> Iterable[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()


class Database:
    """
    Single shared aiosqlite connection in autocommit mode.

    Plain calls run one statement each. ``transaction()`` holds the lock for
    the whole block, so statements from other tasks never interleave with an
    open transaction. Code inside a transaction must use the yielded handle,
    never the Database itself.
    """

    def __init__(self, path: str):
        self.path = path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.executescript(SCHEMA)
        logger.info("Database ready: %s", self.path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _handle(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return Connection(self._conn)

    async def execute(self, sql: str, *params: Any) -> None:
        async with self._lock:
            await self._handle().execute(sql, *params)

    async def execute_with_rowcount(self, sql: str, *params: Any) -> int:
        async with self._lock:
            return await self._handle().execute_with_rowcount(sql, *params)

    async def insert(self, sql: str, *params: Any) -> int:
        async with self._lock:
            return await self._handle().insert(sql, *params)

    async def fetchone(self, sql: str, *params: Any) -> aiosqlite.Row | None:
        async with self._lock:
            return await self._handle().fetchone(sql, *params)

    async def fetchall(self, sql: str, *params: Any) -> Iterable[aiosqlite.Row]:
        async with self._lock:
            return await self._handle().fetchall(sql, *params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        async with self._lock:
            handle = self._handle()
            await handle.execute("BEGIN IMMEDIATE")
            try:
                yield handle
            except BaseException:
                await handle.execute("ROLLBACK")
                raise
            await handle.execute("COMMIT")
