"""Database connection factory.

Provides the singleton async connection to SQLite with WAL mode, plus the
write-serialization primitives shared by every repository on that
connection.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from sessiondex import config
from sessiondex.errors import StoreUnavailable

logger = logging.getLogger("sessiondex.db")

DB_PATH: Path = config.DB_PATH

_connection: aiosqlite.Connection | None = None

# Several repositories share one connection; a write unit must not be
# committed by another coroutine's commit halfway through.
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()
_key_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, KeyedLocks]" = weakref.WeakKeyDictionary()

_UNAVAILABLE_MARKERS = ("locked", "busy", "unable to open", "disk i/o", "readonly")


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[db] = lock
    return lock


def key_locks(db: aiosqlite.Connection) -> KeyedLocks:
    locks = _key_locks.get(db)
    if locks is None:
        locks = KeyedLocks()
        _key_locks[db] = locks
    return locks


def is_unavailable_error(exc: BaseException) -> bool:
    if not isinstance(exc, aiosqlite.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)


@asynccontextmanager
async def transaction(
    db: aiosqlite.Connection,
    operation: str,
    session_id: str = "",
) -> AsyncIterator[aiosqlite.Connection]:
    """Run one write unit: commit on success, roll back on any error.

    Locked/busy SQLite errors surface as ``StoreUnavailable``.
    """
    async with write_lock(db):
        try:
            yield db
            await db.commit()
        except BaseException as exc:
            try:
                await db.rollback()
            except aiosqlite.Error as rollback_exc:
                logger.error(f"Rollback failed during {operation}: {rollback_exc}")
            if is_unavailable_error(exc):
                raise StoreUnavailable(operation, session_id, str(exc)) from exc
            raise


async def open_connection(path: str | Path) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    try:
        _connection = await open_connection(DB_PATH)
    except aiosqlite.OperationalError as e:
        raise StoreUnavailable("connect", reason=str(e)) from e
    logger.info(f"Database connection established: {DB_PATH}")
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
