"""
Isolation anomalies reproduced on the pallet tables.

Every scenario asserts what PostgreSQL actually does at the given isolation
level, anomalies included, and returns the observed outcome.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from lockstep.base.interface import BaseInterface
from lockstep.scenario import (
    Expectation,
    RowExpectation,
    Scenario,
    ScenarioOutcome,
    ScenarioReport,
    ScenarioScript,
    run_scenario,
)
from lockstep.sql.postgres.interface import format_timeout
from lockstep.transaction import (
    Checkpoint,
    Execute,
    IsolationLevel,
    OutcomeKind,
    Pause,
    Rollback,
)

from .schema import create_pallet, create_schema
from .steps import adding_item_if_room, count_items, decrementing, topping_up

logger = logging.getLogger(__name__)

COMMITTED = OutcomeKind.COMMITTED
CAPACITY = "SELECT capacity FROM pallets WHERE id = $pallet_id"
ITEMS = "SELECT count(*) AS items FROM items WHERE pallet_id = $pallet_id"


def _capacity(pallet_id: int, capacity: int) -> RowExpectation:
    return RowExpectation(
        CAPACITY, [{"capacity": capacity}], {"pallet_id": pallet_id}
    )


def _items(pallet_id: int, items: int) -> RowExpectation:
    return RowExpectation(ITEMS, [{"items": items}], {"pallet_id": pallet_id})


async def read_committed_lost_update(scenario: Scenario) -> ScenarioOutcome:
    """Both transactions read capacity 1 and write back `read - 1`.

    Two decrements commit but the capacity only drops once.
    """
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=1)
    t1 = scenario.transaction(decrementing(pallet_id, from_read=True))
    t2 = scenario.transaction(decrementing(pallet_id, from_read=True))

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(t1, "read"), (t2, "read"), t2, t1])

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, 0)},
            transactions={t1.name: COMMITTED, t2.name: COMMITTED},
            values={
                t1.name: {"capacity": 1, "remaining": 0},
                t2.name: {"capacity": 1, "remaining": 0},
            },
        )
    )


async def read_committed_overfill(scenario: Scenario) -> ScenarioOutcome:
    """Both transactions see room on the pallet and both take it"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=1)
    main = scenario.transaction(decrementing(pallet_id), name="main")
    interfering = scenario.transaction(
        decrementing(pallet_id, checkpoint=None), name="interfering"
    )

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(main, "read"), interfering, main])

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, -1)},
            transactions={main.name: COMMITTED, interfering.name: COMMITTED},
        )
    )


async def read_committed_lost_top_up(scenario: Scenario) -> ScenarioOutcome:
    """Two top-ups of 20 from an empty pallet leave it at 20, not 40"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=0)
    main = scenario.transaction(topping_up(pallet_id, 20), name="main")
    interfering = scenario.transaction(
        topping_up(pallet_id, 20, checkpoint=None), name="interfering"
    )

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(main, "read"), interfering, main])

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, 20)},
            transactions={main.name: COMMITTED, interfering.name: COMMITTED},
        )
    )


async def select_for_update_serializes(
    scenario: Scenario, hold: float = 0.5
) -> ScenarioOutcome:
    """The second `SELECT ... FOR UPDATE` waits for the first to commit"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=1)
    steps = decrementing(pallet_id, for_update=True, checkpoint="locked")
    # Keep the row lock for a while after signalling that it is held
    steps.insert(2, Pause(hold))
    main = scenario.transaction(steps, name="main")
    interfering = scenario.transaction(
        decrementing(pallet_id, for_update=True, checkpoint=None),
        name="interfering",
    )

    async with scenario.preemptive() as scheduler:
        await scheduler.start(main)
        await scheduler.reached(main, "locked", timeout=hold * 10)
        await scheduler.start(interfering)
        await scheduler.await_all(timeout=hold * 10)

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, 0)},
            transactions={main.name: COMMITTED, interfering.name: COMMITTED},
            values={interfering.name: {"capacity": 0}},
        )
    )


async def lock_wait_times_out(
    scenario: Scenario, timeout: float = 1.0
) -> ScenarioOutcome:
    """A reader stuck behind an ALTER TABLE fails instead of hanging"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=3)
    altering = scenario.transaction(
        [
            Execute("ALTER TABLE pallets ADD COLUMN extension INTEGER"),
            Checkpoint("locked"),
            Pause(timeout * 3),
            Rollback(),
        ],
        name="altering",
    )
    reader = scenario.transaction(
        [
            Execute(
                "SET LOCAL statement_timeout = "
                f"'{format_timeout(timeout)}'"
            ),
            Execute(
                CAPACITY,
                {"pallet_id": pallet_id},
                into="capacity",
                scalar=True,
            ),
        ],
        name="reader",
    )

    async with scenario.preemptive() as scheduler:
        await scheduler.start(altering)
        await scheduler.reached(altering, "locked", timeout=timeout * 10)
        await scheduler.start(reader)
        await scheduler.await_all(timeout=timeout * 10)

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, 3)},
            transactions={
                altering.name: OutcomeKind.ROLLED_BACK,
                reader.name: OutcomeKind.STATEMENT_TIMEOUT,
            },
        )
    )


async def repeatable_read_serialization_failure(
    scenario: Scenario,
) -> ScenarioOutcome:
    """Writing a row changed since the snapshot was taken aborts"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=1)
    bump = Execute(
        "UPDATE pallets SET capacity = capacity + 1 WHERE id = $pallet_id",
        {"pallet_id": pallet_id},
    )
    main = scenario.transaction(
        # The first statement after BEGIN takes the snapshot
        [Execute("SELECT 0"), Checkpoint("snapshot"), bump],
        name="main",
        isolation_level=IsolationLevel.REPEATABLE_READ,
    )
    interfering = scenario.transaction(
        [bump],
        name="interfering",
        isolation_level=IsolationLevel.REPEATABLE_READ,
    )

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(main, "snapshot"), interfering, main])

    return await scenario.assert_outcome(
        Expectation(
            rows={"pallet": _capacity(pallet_id, 2)},
            transactions={
                main.name: OutcomeKind.SERIALIZATION_FAILURE,
                interfering.name: COMMITTED,
            },
        )
    )


async def repeatable_read_hides_inserts(
    scenario: Scenario,
) -> ScenarioOutcome:
    """Items inserted after the snapshot stay invisible to it"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=10)
    main = scenario.transaction(
        [
            count_items(pallet_id, into="before"),
            Checkpoint("counted"),
            count_items(pallet_id, into="after"),
        ],
        name="main",
        isolation_level=IsolationLevel.REPEATABLE_READ,
    )
    inserting = scenario.transaction(
        adding_item_if_room(pallet_id, capacity=10, checkpoint=None),
        name="inserting",
    )

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(main, "counted"), inserting, main])

    return await scenario.assert_outcome(
        Expectation(
            rows={"items": _items(pallet_id, 1)},
            transactions={main.name: COMMITTED, inserting.name: COMMITTED},
            values={main.name: {"before": 0, "after": 0}},
        )
    )


async def serializable_aborts_write_skew(
    scenario: Scenario,
) -> ScenarioOutcome:
    """Both see a free slot and insert; the second commit is refused"""
    await create_schema(scenario)
    pallet_id = await create_pallet(scenario, capacity=1)
    t1 = scenario.transaction(
        adding_item_if_room(pallet_id, capacity=1),
        isolation_level=IsolationLevel.SERIALIZABLE,
    )
    t2 = scenario.transaction(
        adding_item_if_room(pallet_id, capacity=1),
        isolation_level=IsolationLevel.SERIALIZABLE,
    )

    async with scenario.cooperative() as scheduler:
        await scheduler.run([(t1, "read"), (t2, "read"), t1, t2])

    return await scenario.assert_outcome(
        Expectation(
            rows={"items": _items(pallet_id, 1)},
            transactions={
                t1.name: COMMITTED,
                t2.name: OutcomeKind.SERIALIZATION_FAILURE,
            },
        )
    )


SCENARIOS: Dict[str, ScenarioScript] = {
    "read committed: lost update": read_committed_lost_update,
    "read committed: overfill": read_committed_overfill,
    "read committed: lost top-up": read_committed_lost_top_up,
    "read committed: select for update": select_for_update_serializes,
    "read committed: lock wait timeout": lock_wait_times_out,
    "repeatable read: serialization failure": (
        repeatable_read_serialization_failure
    ),
    "repeatable read: hidden inserts": repeatable_read_hides_inserts,
    "serializable: write skew": serializable_aborts_write_skew,
}


async def run_all(pool: BaseInterface) -> List[ScenarioReport]:
    reports = []
    for name, script in SCENARIOS.items():
        report = await run_scenario(pool, name, script)
        logger.info("%s", report)
        reports.append(report)
    return reports
