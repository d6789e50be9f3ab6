from unittest.mock import AsyncMock

import pytest
from psycopg.pq import TransactionStatus

from lockstep import InvalidState, PoolExhausted, PostgresPool

from .fakes import DSN


async def test_acquire_and_release(pool, fake_pool):
    lease = await pool.acquire(owner="t1")

    assert lease.owner == "t1"
    assert pool.leased == 1
    assert not lease.is_released

    await pool.release(lease)

    assert lease.is_released
    assert pool.leased == 0
    assert fake_pool.returned == [lease.raw_connection]


async def test_release_is_idempotent(pool, fake_pool):
    lease = await pool.acquire()

    await lease.release()
    await lease.release()
    await pool.release(lease)

    assert len(fake_pool.returned) == 1


async def test_released_lease_cannot_be_used(pool):
    lease = await pool.acquire(owner="t1")
    await lease.release()

    with pytest.raises(InvalidState):
        lease.connection


async def test_leases_never_share_a_connection(pool):
    first = await pool.acquire(owner="t1")
    second = await pool.acquire(owner="t2")

    assert first.connection is not second.connection
    assert pool.leased == 2


async def test_connection_handed_out_twice(pool, fake_pool):
    lease = await pool.acquire(owner="t1")
    fake_pool.getconn = AsyncMock(return_value=lease.connection)

    with pytest.raises(InvalidState):
        await pool.acquire(owner="t2")

    assert pool.leased == 1
    assert not lease.is_released


async def test_pool_exhausted(pool, fake_pool):
    fake_pool.size = 1
    await pool.acquire(owner="t1")

    with pytest.raises(PoolExhausted):
        await pool.acquire(owner="t2")


async def test_pool_exhausted_chains_pool_timeout(pool, fake_pool):
    fake_pool.size = 0

    with pytest.raises(PoolExhausted) as excinfo:
        await pool.acquire()

    assert excinfo.value.__cause__.__class__.__name__ == "PoolTimeout"


async def test_statement_timeout_applied_on_acquire(database):
    pool = PostgresPool(dsn=DSN, statement_timeout=1.5)

    await pool.acquire()

    assert database.statements() == ["SET statement_timeout = '1500ms'"]


async def test_no_statement_timeout_by_default(pool, database):
    await pool.acquire()

    assert database.statements() == []


async def test_release_rolls_back_open_transaction(pool, database):
    lease = await pool.acquire()
    await lease.connection.execute("BEGIN")
    assert (
        lease.connection.info.transaction_status is TransactionStatus.INTRANS
    )

    await lease.release()

    assert database.statements() == ["BEGIN", "ROLLBACK"]


async def test_release_survives_failed_rollback(pool, database, fake_pool):
    lease = await pool.acquire()
    await lease.connection.execute("BEGIN")
    database.on("ROLLBACK", ConnectionError("server went away"))

    await lease.release()

    assert lease.is_released
    assert fake_pool.returned == [lease.raw_connection]


async def test_lease_context_releases_on_error(pool, fake_pool):
    with pytest.raises(RuntimeError):
        async with pool.lease(owner="setup") as lease:
            raise RuntimeError("boom")

    assert lease.is_released
    assert pool.leased == 0
    assert len(fake_pool.returned) == 1
