"""DuckDB storage with a bounded pool of connections.

The messaging core shares one DuckDB database across every concurrent
handler. Each logical operation (send, update, delete, membership check)
acquires one pooled cursor for its whole duration and always hands it
back, whether the operation succeeds, fails validation or blows up.

Database Schema:
    users:          id, username, avatar_url (owned by the account service)
    chat_groups:    id, name, created_by, avatar_url, created_at
    group_members:  group_id, user_id, role, joined_at
    messages:       id, sender_id, recipient_id, group_id, content,
                    created_at, updated_at

Concurrency:
    DuckDB calls are blocking, so every statement runs in a worker thread
    via ``asyncio.to_thread``. A cursor is only ever used by the one
    operation that checked it out, so no cursor is shared between threads
    at the same time. Handlers waiting for a free cursor queue on the event
    loop (an ``asyncio.LifoQueue``); only statements run in threads.

Usage:
    db = Database(":memory:", pool_size=4)
    async with db.acquire() as conn:
        row = await conn.fetchone("SELECT 1 AS one")
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import duckdb

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

SCHEMA_STATEMENTS = (
    "CREATE SEQUENCE IF NOT EXISTS users_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER DEFAULT nextval('users_seq') PRIMARY KEY,
        username VARCHAR NOT NULL,
        avatar_url VARCHAR
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS chat_groups_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS chat_groups (
        id INTEGER DEFAULT nextval('chat_groups_seq') PRIMARY KEY,
        name VARCHAR NOT NULL,
        created_by INTEGER NOT NULL,
        avatar_url VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        role VARCHAR NOT NULL,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
        sender_id INTEGER NOT NULL,
        recipient_id INTEGER,
        group_id INTEGER,
        content VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_group_members_user ON group_members(user_id)",
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _rows(cursor: duckdb.DuckDBPyConnection) -> List[Row]:
    if cursor.description is None:
        return []
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, values)) for values in cursor.fetchall()]


class PooledConnection:
    """A cursor checked out of the pool for one logical operation."""

    def __init__(self, cursor: duckdb.DuckDBPyConnection) -> None:
        self._cursor = cursor
        self.in_transaction = False

    def _run(self, sql: str, params: Optional[Sequence[Any]]) -> List[Row]:
        try:
            self._cursor.execute(sql, list(params or []))
            return _rows(self._cursor)
        except duckdb.Error as e:
            logger.error(f"[DB] Statement failed: {e}")
            raise StoreUnavailable() from e

    async def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        return await asyncio.to_thread(self._run, sql, params)

    async def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Row]:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        await self.fetchall(sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PooledConnection"]:
        """Run the enclosed statements atomically; roll back on any error."""
        await self.execute("BEGIN TRANSACTION")
        self.in_transaction = True
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        else:
            await self.execute("COMMIT")
            self.in_transaction = False

    async def rollback(self) -> None:
        if not self.in_transaction:
            return
        self.in_transaction = False
        try:
            await self.execute("ROLLBACK")
        except StoreUnavailable:
            logger.warning("[DB] Rollback failed; cursor state may be stale")


class Database:
    """DuckDB database plus a fixed-size pool of cursors.

    Attributes:
        path: DuckDB file path, or ":memory:" for a private in-memory db.
        pool_size: Number of cursors handed out concurrently.
        acquire_timeout: Seconds to wait for a free cursor before giving up.
    """

    def __init__(
        self,
        path: str = ":memory:",
        pool_size: int = 10,
        acquire_timeout: float = 2.0,
    ) -> None:
        self.path = path
        self.pool_size = pool_size
        self.acquire_timeout = acquire_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(path)
        self._initialize_db()
        self._idle: "asyncio.LifoQueue[duckdb.DuckDBPyConnection]" = asyncio.LifoQueue()
        self._cursors: List[duckdb.DuckDBPyConnection] = []
        for _ in range(pool_size):
            cursor = self._connection.cursor()
            self._cursors.append(cursor)
            self._idle.put_nowait(cursor)
        logger.info(f"[DB] Opened {path} with a pool of {pool_size} connections")

    def _initialize_db(self) -> None:
        """Create tables and sequences if they don't exist (idempotent)."""
        for statement in SCHEMA_STATEMENTS:
            self._connection.execute(statement)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[PooledConnection]:
        """Check out a pooled connection for the duration of the block.

        Raises:
            StoreUnavailable: If the database is closed or no connection
                frees up within ``acquire_timeout`` seconds.
        """
        if self._connection is None:
            raise StoreUnavailable()
        try:
            cursor = await asyncio.wait_for(self._idle.get(), self.acquire_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[DB] Pool exhausted after {self.acquire_timeout}s")
            raise StoreUnavailable() from None

        conn = PooledConnection(cursor)
        try:
            yield conn
        finally:
            try:
                if conn.in_transaction:
                    await conn.rollback()
            finally:
                self._idle.put_nowait(cursor)

    @property
    def idle_count(self) -> int:
        """Cursors currently available for checkout."""
        return self._idle.qsize()

    def close(self) -> None:
        """Close every cursor and the underlying connection."""
        if self._connection is None:
            return
        for cursor in self._cursors:
            cursor.close()
        self._cursors.clear()
        self._connection.close()
        self._connection = None
        logger.info(f"[DB] Closed {self.path}")
