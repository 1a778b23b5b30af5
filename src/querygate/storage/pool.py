"""Bounded DuckDB connection pool with scoped leasing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from itertools import count
from typing import TYPE_CHECKING, Any, TypeVar

import duckdb
from anyio import CapacityLimiter, to_thread

from querygate.errors import PoolConnectionError, PoolExhaustedError, problem

if TYPE_CHECKING:
    from querygate.config.serving_models import ServingConfig

log = logging.getLogger(__name__)

T = TypeVar("T")

Connector = Callable[[str, bool], duckdb.DuckDBPyConnection]


def _default_connector(database: str, read_only: bool) -> duckdb.DuckDBPyConnection:  # noqa: FBT001
    return duckdb.connect(database, read_only=read_only)


@dataclass(eq=False)
class PooledConnection:
    """A leased handle to one DuckDB connection."""

    con: duckdb.DuckDBPyConnection
    ident: int
    leases: int = 0
    released_at: float = 0.0

    def interrupt(self) -> None:
        """Ask DuckDB to abort whatever statement is running on this connection."""
        try:
            self.con.interrupt()
        except duckdb.Error as exc:
            log.warning("Could not interrupt connection %d: %s", self.ident, exc)


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool counters."""

    max_size: int
    leased: int
    idle: int
    waiting: int
    acquire_count: int
    created_count: int


@dataclass
class ConnectionPool:
    """
    Hand out DuckDB connections to one caller at a time, up to ``max_size``.

    Connections are cursors of a single root database connection, so every
    lease sees the same database instance. Bookkeeping runs on the event loop
    thread; statement execution belongs in worker threads via ``run_sync``.
    """

    database: str
    read_only: bool = True
    max_size: int = 20
    idle_timeout: float = 30.0
    acquire_timeout: float = 5.0
    connector: Connector = _default_connector
    clock: Callable[[], float] = time.monotonic

    _root: duckdb.DuckDBPyConnection | None = field(default=None, init=False, repr=False)
    _limiter: CapacityLimiter | None = field(default=None, init=False, repr=False)
    _slots: asyncio.Semaphore = field(init=False, repr=False)
    _idle: deque[PooledConnection] = field(default_factory=deque, init=False, repr=False)
    _leased: dict[int, PooledConnection] = field(default_factory=dict, init=False, repr=False)
    _drained: asyncio.Event = field(init=False, repr=False)
    _ids: count = field(default_factory=count, init=False, repr=False)
    _waiting: int = field(default=0, init=False, repr=False)
    _acquire_count: int = field(default=0, init=False, repr=False)
    _created_count: int = field(default=0, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_size <= 0:
            message = "max_size must be positive"
            raise ValueError(message)
        self._slots = asyncio.Semaphore(self.max_size)
        self._drained = asyncio.Event()
        self._drained.set()

    @classmethod
    def from_config(cls, cfg: ServingConfig) -> ConnectionPool:
        """
        Build a pool from serving configuration.

        Returns
        -------
        ConnectionPool
            Unopened pool sized and timed per ``cfg``.
        """
        return cls(
            database=cfg.database_path,
            read_only=cfg.read_only,
            max_size=cfg.pool_max_size,
            idle_timeout=cfg.pool_idle_timeout,
            acquire_timeout=cfg.pool_acquire_timeout,
        )

    @property
    def closed(self) -> bool:
        """Whether ``close`` has been called."""
        return self._closed

    @property
    def is_open(self) -> bool:
        """Whether the root database connection is live."""
        return self._root is not None and not self._closed

    async def open(self) -> None:
        """
        Open the root database connection.

        Raises
        ------
        PoolConnectionError
            If DuckDB cannot open the database.
        """
        if self._root is not None:
            return
        if self._limiter is None:
            self._limiter = CapacityLimiter(self.max_size)
        log.info("Opening DuckDB database %s (read_only=%s)", self.database, self.read_only)
        try:
            self._root = await to_thread.run_sync(self.connector, self.database, self.read_only)
        except duckdb.Error as exc:
            raise PoolConnectionError(
                problem(
                    code="pool.open_failed",
                    title="Database unavailable",
                    detail=str(exc),
                    extras={"database": self.database},
                )
            ) from exc

    async def run_sync(self, func: Callable[..., T], *args: Any) -> T:  # noqa: ANN401
        """
        Run blocking database work in a worker thread bounded by the pool size.

        Returns
        -------
        T
            Whatever ``func`` returns.
        """
        return await to_thread.run_sync(func, *args, limiter=self._limiter)

    async def acquire(self, timeout: float | None = None) -> PooledConnection:
        """
        Lease a connection, waiting at most ``timeout`` seconds for capacity.

        Parameters
        ----------
        timeout:
            Wait bound; defaults to ``acquire_timeout``.

        Returns
        -------
        PooledConnection
            Connection exclusively owned by the caller until ``release``.

        Raises
        ------
        PoolExhaustedError
            If no connection frees up within the wait bound.
        PoolConnectionError
            If the pool is not open or a new connection cannot be created.
        """
        self._acquire_count += 1
        self._ensure_usable()
        wait = self.acquire_timeout if timeout is None else timeout
        self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=wait)
        except TimeoutError:
            raise PoolExhaustedError(
                problem(
                    code="pool.exhausted",
                    title="Connection pool exhausted",
                    detail=f"No database connection available after {wait:g}s",
                    extras={"max_size": self.max_size, "leased": len(self._leased)},
                )
            ) from None
        finally:
            self._waiting -= 1

        try:
            self._ensure_usable()
            conn = self._checkout()
        except BaseException:
            self._slots.release()
            raise
        conn.leases += 1
        self._leased[conn.ident] = conn
        self._drained.clear()
        return conn

    def release(self, conn: PooledConnection) -> None:
        """
        Return a leased connection to the pool.

        Raises
        ------
        ValueError
            If ``conn`` is not currently leased from this pool.
        """
        if self._leased.pop(conn.ident, None) is None:
            message = f"Connection {conn.ident} is not leased from this pool"
            raise ValueError(message)
        conn.released_at = self.clock()
        if self._closed:
            self._discard(conn)
        else:
            self._idle.append(conn)
        if not self._leased:
            self._drained.set()
        self._slots.release()

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator[PooledConnection]:
        """
        Acquire a connection for the duration of a block.

        The connection is released on every exit path, including errors and
        cancellation.

        Usage:
            async with pool.lease() as conn:
                rows = await pool.run_sync(conn.con.execute, "SELECT 1")
        """
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    async def verify(self) -> None:
        """Lease one connection and run a trivial statement on it."""
        async with self.lease() as conn:
            await self.run_sync(conn.con.execute, "SELECT 1")

    def prune_idle(self) -> int:
        """
        Close idle connections that outlived ``idle_timeout``.

        Returns
        -------
        int
            Number of connections closed.
        """
        now = self.clock()
        pruned = 0
        while self._idle and now - self._idle[0].released_at > self.idle_timeout:
            self._discard(self._idle.popleft())
            pruned += 1
        if pruned:
            log.debug("Pruned %d idle connection(s)", pruned)
        return pruned

    async def run_reaper(self, interval: float | None = None) -> None:
        """Prune idle connections periodically until cancelled or closed."""
        period = interval if interval is not None else max(self.idle_timeout / 2, 0.05)
        while not self._closed:
            await asyncio.sleep(period)
            self.prune_idle()

    async def close(self, drain_timeout: float = 5.0) -> None:
        """
        Stop leasing, wait for in-flight leases, then close every connection.

        Leases still outstanding after ``drain_timeout`` are interrupted and
        closed when their holders release them.
        """
        if self._closed:
            return
        self._closed = True
        if self._leased:
            log.debug("Draining %d leased connection(s)", len(self._leased))
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=drain_timeout)
            except TimeoutError:
                log.warning(
                    "Pool drain timed out with %d connection(s) in use; interrupting",
                    len(self._leased),
                )
                for conn in list(self._leased.values()):
                    conn.interrupt()
        while self._idle:
            self._discard(self._idle.popleft())
        if self._root is not None:
            root, self._root = self._root, None
            try:
                root.close()
            except duckdb.Error as exc:
                log.warning("Error closing database %s: %s", self.database, exc)
        log.info("Connection pool closed")

    def stats(self) -> PoolStats:
        """
        Snapshot pool counters.

        Returns
        -------
        PoolStats
            Current sizes and lifetime counters.
        """
        return PoolStats(
            max_size=self.max_size,
            leased=len(self._leased),
            idle=len(self._idle),
            waiting=self._waiting,
            acquire_count=self._acquire_count,
            created_count=self._created_count,
        )

    def _ensure_usable(self) -> None:
        if self._root is None or self._closed:
            raise PoolConnectionError(
                problem(
                    code="pool.closed",
                    title="Connection pool unavailable",
                    detail="Connection pool is not open",
                    extras={"database": self.database},
                )
            )

    def _checkout(self) -> PooledConnection:
        self.prune_idle()
        if self._idle:
            return self._idle.pop()
        if self._root is None:
            message = "pool root connection is not open"
            raise RuntimeError(message)
        try:
            con = self._root.cursor()
        except duckdb.Error as exc:
            raise PoolConnectionError(
                problem(
                    code="pool.connect_failed",
                    title="Could not open database connection",
                    detail=str(exc),
                    extras={"database": self.database},
                )
            ) from exc
        self._created_count += 1
        return PooledConnection(con=con, ident=next(self._ids))

    def _discard(self, conn: PooledConnection) -> None:
        try:
            conn.con.close()
        except duckdb.Error as exc:
            log.warning("Unexpected error on idle connection %d: %s", conn.ident, exc)
