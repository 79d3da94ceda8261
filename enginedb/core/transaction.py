"""
Transaction coordinator.

A unit of work is an async callable that receives a `Transaction` handle.
The coordinator checks a connection out of the pool, begins a transaction,
awaits the scope, and commits. Any exception or cancellation inside the
scope rolls back before it propagates, so a unit of work is either fully
applied or not at all.

For library-wide jobs where one transaction is infeasible, `run_chunked`
processes ids in ascending chunks, each chunk committed together with a
checkpoint row. An interrupted job resumes after the last committed id.
"""

from __future__ import annotations

import logging
import sqlite3
import weakref
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import aiosqlite

from enginedb.core import CoreError, TransactionAbortedError
from enginedb.core.db.models import EntityType
from enginedb.core.pool import ConnectionPool
from enginedb.core.repository import CheckpointRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")
Params = Sequence[Any] | Mapping[str, Any]


class Transaction:
    """
    Handle for one unit of work on one pooled connection.

    Handles are only valid inside the scope that received them; using one
    after its transaction ended raises `RuntimeError`.
    """

    def __init__(self, conn: aiosqlite.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self.read_only = read_only
        self._closed = False
        self._streams: weakref.WeakSet[AsyncGenerator[aiosqlite.Row, None]] = weakref.WeakSet()

    @property
    def closed(self) -> bool:
        return self._closed

    def _close(self) -> None:
        self._closed = True

    def _require_open(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError("Transaction handle used after its unit of work ended")
        return self._conn

    def _require_writable(self) -> aiosqlite.Connection:
        conn = self._require_open()
        if self.read_only:
            raise CoreError("write attempted inside a read-only transaction")
        return conn

    async def fetch_one(self, sql: str, params: Params = ()) -> aiosqlite.Row | None:
        conn = self._require_open()
        async with conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Params = ()) -> list[aiosqlite.Row]:
        conn = self._require_open()
        async with conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def fetch_value(self, sql: str, params: Params = ()) -> Any:
        row = await self.fetch_one(sql, params)
        return None if row is None else row[0]

    def stream(self, sql: str, params: Params = ()) -> AsyncGenerator[aiosqlite.Row, None]:
        """
        Yield rows from a streaming cursor without materializing the result.

        A consumer that may stop early should wrap the iterator in
        `contextlib.aclosing` so the cursor closes right away. Streams still
        open when the unit of work ends are closed by the coordinator.
        """
        self._require_open()
        rows = self._stream(sql, params)
        self._streams.add(rows)
        return rows

    async def _stream(self, sql: str, params: Params) -> AsyncGenerator[aiosqlite.Row, None]:
        conn = self._require_open()
        async with conn.execute(sql, params) as cursor:
            async for row in cursor:
                yield row

    async def _close_streams(self) -> None:
        for rows in list(self._streams):
            await rows.aclose()
        self._streams.clear()

    async def execute(self, sql: str, params: Params = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        conn = self._require_writable()
        async with conn.execute(sql, params) as cursor:
            return cursor.rowcount

    async def insert(self, sql: str, params: Params = ()) -> int:
        """Run an INSERT and return the allocated row id."""
        conn = self._require_writable()
        async with conn.execute(sql, params) as cursor:
            row_id = cursor.lastrowid
        if row_id is None:
            raise CoreError("storage engine did not report an inserted row id")
        return int(row_id)


@dataclass(frozen=True, slots=True)
class ChunkedRun:
    """Summary of one `run_chunked` invocation."""

    task: str
    entity_type: EntityType
    chunks: int
    processed: int
    resumed_after: int | None


async def _rollback(conn: aiosqlite.Connection) -> None:
    if conn.in_transaction:
        await conn.execute("ROLLBACK")


async def _end(tx: Transaction) -> None:
    # Abandoned streams still hold a cursor on the connection
    try:
        await tx._close_streams()
    finally:
        tx._close()


class TransactionCoordinator:
    """
    Wraps units of work in transactions over a `ConnectionPool`.

    Writers use `BEGIN IMMEDIATE` so lock contention surfaces at BEGIN
    (after SQLite's busy timeout) rather than halfway through a scope.
    Read-only units use a deferred `BEGIN` and always roll back.
    """

    def __init__(
        self, pool: ConnectionPool, checkpoints: CheckpointRepository | None = None
    ) -> None:
        self._pool = pool
        self._checkpoints = checkpoints or CheckpointRepository()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def checkpoints(self) -> CheckpointRepository:
        return self._checkpoints

    @asynccontextmanager
    async def transaction(self, *, read_only: bool = False) -> AsyncIterator[Transaction]:
        """
        Async context manager variant of `run` for interactive edits.

        Usage:
            async with coordinator.transaction() as tx:
                await library.tracks.update(tx, track)
        """
        async with self._pool.connection() as conn:
            try:
                await conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise TransactionAbortedError(f"could not begin transaction: {exc}") from exc

            tx = Transaction(conn, read_only=read_only)
            try:
                yield tx
            except BaseException:
                try:
                    await _end(tx)
                finally:
                    await _rollback(conn)
                raise

            await _end(tx)
            if read_only:
                await _rollback(conn)
                return
            try:
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await _rollback(conn)
                raise TransactionAbortedError(f"commit failed: {exc}") from exc

    async def run(
        self, scope: Callable[[Transaction], Awaitable[T]], *, read_only: bool = False
    ) -> T:
        """Run `scope` in its own transaction and return its result."""
        async with self.transaction(read_only=read_only) as tx:
            return await scope(tx)

    async def autocommit(self, scope: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run `scope` outside of any transaction.

        Only for statements SQLite refuses inside a transaction (VACUUM).
        """
        async with self._pool.connection() as conn:
            tx = Transaction(conn)
            try:
                return await scope(tx)
            finally:
                await _end(tx)

    async def run_chunked(
        self,
        task: str,
        entity_type: EntityType,
        fetch_ids: Callable[[Transaction, int | None, int], Awaitable[Sequence[int]]],
        process: Callable[[Transaction, Sequence[int]], Awaitable[T]],
        *,
        chunk_size: int = 128,
        on_commit: Callable[[T], None] | None = None,
    ) -> ChunkedRun:
        """
        Process ids in ascending chunks, one transaction per chunk.

        `fetch_ids(tx, after_id, limit)` returns the next ids greater than
        `after_id` (all ids when None) in ascending order. `process(tx, ids)`
        handles one chunk. The checkpoint for (`task`, `entity_type`) is
        written in the same transaction as the chunk, and cleared once no
        ids remain.

        `on_commit(result)` receives what `process` returned, once that
        chunk has committed.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        resumed_after = await self.run(
            lambda tx: self._checkpoints.load(tx, task, entity_type), read_only=True
        )
        if resumed_after is not None:
            logger.info("Resuming %s (%s) after id %d", task, entity_type.value, resumed_after)

        chunks = 0
        processed = 0
        while True:

            async def _chunk(tx: Transaction) -> tuple[int, T | None]:
                after = await self._checkpoints.load(tx, task, entity_type)
                ids = list(await fetch_ids(tx, after, chunk_size))
                if not ids:
                    await self._checkpoints.clear(tx, task, entity_type)
                    return 0, None
                result = await process(tx, ids)
                await self._checkpoints.save(tx, task, entity_type, max(ids))
                return len(ids), result

            count, result = await self.run(_chunk)
            if count == 0:
                break
            if on_commit is not None:
                on_commit(result)
            chunks += 1
            processed += count
            logger.debug("%s: committed chunk %d (%d ids)", task, chunks, count)

        logger.info("%s finished: %d ids in %d chunks", task, processed, chunks)
        return ChunkedRun(
            task=task,
            entity_type=entity_type,
            chunks=chunks,
            processed=processed,
            resumed_after=resumed_after,
        )
