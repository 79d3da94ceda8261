"""
Bounded pool of aiosqlite connections.

The pool is the single shared mutable resource of the engine. Every unit of
work checks out one connection, uses it exclusively, and returns it.

Connections are opened in autocommit mode (`isolation_level=None`) so the
transaction coordinator controls BEGIN/COMMIT/ROLLBACK explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from enginedb.core import PoolExhaustedError

logger = logging.getLogger(__name__)

# Accepted values for `journal_mode`; None keeps whatever the file uses.
JOURNAL_MODES = frozenset({"delete", "truncate", "persist", "memory", "wal", "off"})


class ConnectionPool:
    """
    Fixed-size async connection pool for one library file.

    Usage:
        pool = ConnectionPool("m.db", size=4)
        await pool.open()
        async with pool.connection() as conn:
            ...
        await pool.close()

    Notes:
    - `acquire_timeout` bounds how long a caller waits for a free connection;
      after that `PoolExhaustedError` is raised.
    - `busy_timeout` is SQLite's own lock wait (seconds) for writers.
    - `journal_mode` is only applied when given; otherwise the file keeps its
      own journal mode.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        size: int = 4,
        acquire_timeout: float = 30.0,
        busy_timeout: float = 10.0,
        journal_mode: str | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        if journal_mode is not None and journal_mode.lower() not in JOURNAL_MODES:
            raise ValueError(f"unknown journal mode {journal_mode!r}")
        self._db_path = str(db_path)
        self._size = size
        self._acquire_timeout = acquire_timeout
        self._busy_timeout = busy_timeout
        self._journal_mode = journal_mode.lower() if journal_mode else None
        self._idle: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=size)
        self._all: list[aiosqlite.Connection] = []
        self._in_use = 0

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        """Number of connections currently checked out."""
        return self._in_use

    @property
    def is_open(self) -> bool:
        return bool(self._all)

    async def open(self) -> None:
        if self._all:
            return
        try:
            for _ in range(self._size):
                conn = await self._create_connection()
                self._all.append(conn)
                self._idle.put_nowait(conn)
        except BaseException:
            await self.close()
            raise
        logger.debug("Opened connection pool for %s with %d connections", self._db_path, self._size)

    async def close(self) -> None:
        conns, self._all = self._all, []
        while not self._idle.empty():
            self._idle.get_nowait()
        for conn in conns:
            try:
                await conn.close()
            except Exception as exc:
                logger.warning("Error closing connection to %s: %s", self._db_path, exc)
        self._in_use = 0

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = aiosqlite.Row

        await conn.execute("PRAGMA foreign_keys = ON;")
        if self._journal_mode is not None:
            await conn.execute(f"PRAGMA journal_mode = {self._journal_mode.upper()};")
        await conn.execute("PRAGMA synchronous = NORMAL;")
        await conn.execute("PRAGMA temp_store = MEMORY;")
        return conn

    async def acquire(self) -> aiosqlite.Connection:
        """Check out a connection, waiting up to `acquire_timeout` seconds."""
        if not self._all:
            raise RuntimeError("ConnectionPool is not open. Call await pool.open() first.")
        try:
            conn = await asyncio.wait_for(self._idle.get(), timeout=self._acquire_timeout)
        except asyncio.TimeoutError:
            raise PoolExhaustedError(
                f"no connection available after {self._acquire_timeout:.1f}s "
                f"({self._size} in use)"
            ) from None
        self._in_use += 1
        return conn

    async def release(self, conn: aiosqlite.Connection) -> None:
        """Return a connection; any transaction left open is rolled back."""
        self._in_use -= 1
        if conn not in self._all:
            return
        try:
            if conn.in_transaction:
                logger.warning("Connection returned with an open transaction; rolling back")
                await conn.execute("ROLLBACK")
        finally:
            self._idle.put_nowait(conn)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)
