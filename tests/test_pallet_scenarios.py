import os

import pytest

from lockstep import OutcomeKind, PostgresPool, Scenario, run_scenario
from lockstep.pallets import SCENARIOS, create_schema, seed
from lockstep.pallets.scenarios import read_committed_lost_update

DSN = os.environ.get("LOCKSTEP_TEST_DSN")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DSN, reason="LOCKSTEP_TEST_DSN is not set"),
]


@pytest.fixture
async def pool():
    pool = PostgresPool(
        dsn=DSN,
        min_size=1,
        max_size=4,
        acquire_timeout=10,
        statement_timeout=10,
    )
    await pool.open()
    yield pool
    await pool.close()


@pytest.mark.parametrize("name", list(SCENARIOS))
async def test_scenario(pool, name):
    report = await run_scenario(pool, name, SCENARIOS[name])

    assert report.passed, str(report)
    assert pool.leased == 0


async def test_cooperative_scenario_is_repeatable(pool):
    traces = []
    for _ in range(3):
        async with Scenario(pool, "lost update") as scenario:
            outcome = await read_committed_lost_update(scenario)
        traces.append(
            [
                (record.transaction, record.step, record.outcome)
                for record in outcome.trace
            ]
        )
        assert set(outcome.kinds().values()) == {OutcomeKind.COMMITTED}

    assert traces[0] == traces[1] == traces[2]


async def test_seed(pool):
    async with Scenario(pool, "seed") as scenario:
        await create_schema(scenario)
        ids = await seed(scenario, pallets=5, capacity=10, items_per_pallet=3)
        rows = await scenario.execute(
            "SELECT pallet_id, count(*) AS items FROM items "
            "WHERE pallet_id = ANY($ids) GROUP BY pallet_id",
            {"ids": ids},
        )

    assert len(ids) == 5
    assert sorted(rows.column("pallet_id")) == sorted(ids)
    assert set(rows.column("items")) == {3}
