"""Connection pool bounds, leasing and idle pruning."""

from __future__ import annotations

import asyncio
from pathlib import Path

import anyio
import pytest

from querygate.errors import PoolConnectionError, PoolExhaustedError
from querygate.storage.pool import ConnectionPool
from tests._helpers.fakes import ManualClock


def _memory_pool(**kwargs: object) -> ConnectionPool:
    return ConnectionPool(database=":memory:", read_only=False, **kwargs)  # type: ignore[arg-type]


def test_acquire_times_out_when_pool_is_full() -> None:
    """A full pool rejects further leases after the wait bound."""

    async def _scenario() -> None:
        pool = _memory_pool(max_size=1, acquire_timeout=0.05)
        await pool.open()
        held = await pool.acquire()
        with pytest.raises(PoolExhaustedError) as excinfo:
            await pool.acquire()
        if excinfo.value.problem_detail.code != "pool.exhausted":
            pytest.fail(f"Unexpected problem code {excinfo.value.problem_detail.code}")
        pool.release(held)
        again = await pool.acquire()
        if pool.stats().leased != 1:
            pytest.fail("Expected exactly one leased connection after re-acquire")
        pool.release(again)
        await pool.close()

    anyio.run(_scenario)


def test_release_wakes_waiting_acquirer() -> None:
    """Releasing a connection hands capacity to a blocked waiter."""

    async def _scenario() -> None:
        pool = _memory_pool(max_size=1, acquire_timeout=2.0)
        await pool.open()
        held = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.05)
        if waiter.done():
            pytest.fail("Waiter should block while the pool is full")
        if pool.stats().waiting != 1:
            pytest.fail("Expected one waiter to be counted")
        pool.release(held)
        conn = await asyncio.wait_for(waiter, timeout=1.0)
        if conn.ident != held.ident:
            pytest.fail("Released connection should be reused by the waiter")
        pool.release(conn)
        await pool.close()

    anyio.run(_scenario)


def test_never_more_than_max_size_leased_concurrently() -> None:
    """Concurrent lessees never exceed the configured bound."""

    async def _scenario() -> None:
        pool = _memory_pool(max_size=3, acquire_timeout=5.0)
        await pool.open()
        peak = 0

        async def _use() -> None:
            nonlocal peak
            async with pool.lease():
                peak = max(peak, pool.stats().leased)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(_use() for _ in range(12)))
        if peak > pool.max_size:
            pytest.fail(f"Leased {peak} connections with max_size={pool.max_size}")
        if pool.stats().created_count > pool.max_size:
            pytest.fail("Pool created more connections than its bound")
        await pool.close()

    anyio.run(_scenario)


def test_lease_releases_on_error() -> None:
    """The lease scope returns the connection even when the body raises."""

    async def _scenario() -> None:
        pool = _memory_pool(max_size=1)
        await pool.open()
        with pytest.raises(RuntimeError):
            async with pool.lease():
                message = "boom"
                raise RuntimeError(message)
        stats = pool.stats()
        if stats.leased != 0 or stats.idle != 1:
            pytest.fail(f"Connection not returned to the pool: {stats}")
        await pool.close()

    anyio.run(_scenario)


def test_prune_idle_closes_expired_connections() -> None:
    """Idle connections older than the idle timeout are closed."""

    async def _scenario() -> None:
        clock = ManualClock()
        pool = _memory_pool(max_size=2, idle_timeout=10.0, clock=clock)
        await pool.open()
        first = await pool.acquire()
        second = await pool.acquire()
        pool.release(first)
        clock.advance(6)
        pool.release(second)
        clock.advance(6)
        if pool.prune_idle() != 1:
            pytest.fail("Only the older idle connection should be pruned")
        if pool.stats().idle != 1:
            pytest.fail("The younger idle connection should remain")
        await pool.close()

    anyio.run(_scenario)


def test_release_of_foreign_connection_rejected() -> None:
    """Releasing a connection twice is a programming error."""

    async def _scenario() -> None:
        pool = _memory_pool()
        await pool.open()
        conn = await pool.acquire()
        pool.release(conn)
        with pytest.raises(ValueError, match="not leased"):
            pool.release(conn)
        await pool.close()

    anyio.run(_scenario)


def test_close_is_idempotent_and_blocks_new_leases() -> None:
    """Closing twice is harmless and later acquires fail fast."""

    async def _scenario() -> None:
        pool = _memory_pool()
        await pool.open()
        async with pool.lease():
            pass
        await pool.close()
        await pool.close()
        if pool.is_open:
            pytest.fail("Pool should report closed")
        with pytest.raises(PoolConnectionError):
            await pool.acquire()

    anyio.run(_scenario)


def test_close_waits_for_in_flight_lease() -> None:
    """Close drains outstanding leases before tearing the database down."""

    async def _scenario() -> None:
        pool = _memory_pool()
        await pool.open()
        conn = await pool.acquire()
        closer = asyncio.create_task(pool.close(drain_timeout=2.0))
        await asyncio.sleep(0.05)
        if closer.done():
            pytest.fail("Close should wait for the leased connection")
        pool.release(conn)
        await asyncio.wait_for(closer, timeout=1.0)
        if pool.stats().idle != 0:
            pytest.fail("Released connection should be discarded after close")

    anyio.run(_scenario)


def test_open_failure_is_connection_error(tmp_path: Path) -> None:
    """A database that cannot be opened surfaces as a pool connection error."""

    async def _scenario() -> None:
        pool = ConnectionPool(database=str(tmp_path / "missing.duckdb"), read_only=True)
        with pytest.raises(PoolConnectionError):
            await pool.open()

    anyio.run(_scenario)


def test_verify_runs_against_sample_database(sample_db: Path) -> None:
    """Reachability check succeeds on a seeded read-only database."""

    async def _scenario() -> None:
        pool = ConnectionPool(database=str(sample_db), read_only=True)
        await pool.open()
        await pool.verify()
        async with pool.lease() as conn:
            row = await pool.run_sync(
                lambda: conn.con.execute("SELECT count(*) FROM employees").fetchone()
            )
        if row != (10,):
            pytest.fail(f"Unexpected employee count {row}")
        await pool.close()

    anyio.run(_scenario)


def test_rejects_non_positive_size() -> None:
    """Pool size must be positive."""
    with pytest.raises(ValueError, match="max_size"):
        ConnectionPool(database=":memory:", read_only=False, max_size=0)
