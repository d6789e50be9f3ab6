from lockstep import Branch, Checkpoint, Execute, ScriptedTransaction
from lockstep.pallets.steps import (
    adding_item_if_room,
    decrementing,
    read_capacity,
    topping_up,
)

from .fakes import sql_only


def test_read_capacity():
    step = read_capacity(7, for_update=True)

    assert step.query.endswith("WHERE id = $pallet_id FOR UPDATE")
    assert step.params == {"pallet_id": 7}
    assert (step.into, step.scalar) == ("capacity", True)


def test_decrementing_layout():
    steps = decrementing(1)
    assert [type(step) for step in steps] == [Execute, Checkpoint, Branch]
    assert steps[1].name == "read"

    assert [type(step) for step in decrementing(1, checkpoint=None)] == [
        Execute,
        Branch,
    ]


async def test_decrementing_from_read_writes_stale_value(pool, database):
    database.on("SELECT capacity", [{"capacity": 5}])
    database.on("UPDATE", [{"capacity": 4}])
    txn = ScriptedTransaction(pool, decrementing(1, from_read=True))

    while not txn.is_terminal:
        await txn.step()

    update = [entry for entry in database.log if "UPDATE" in entry[1]]
    assert update[0][2] == {"capacity": 5, "pallet_id": 1}
    assert txn.values == {"capacity": 5, "remaining": 4}


async def test_decrementing_skips_full_pallet(pool, database):
    database.on("SELECT capacity", [{"capacity": 0}])
    txn = ScriptedTransaction(pool, decrementing(1, checkpoint=None))

    while not txn.is_terminal:
        await txn.step()

    assert sql_only(database.statements()) == [
        "SELECT capacity FROM pallets WHERE id = %(pallet_id)s"
    ]
    assert "remaining" not in txn.values


async def test_topping_up_adds_to_value_read(pool, database):
    database.on("SELECT capacity", [{"capacity": 0}])
    txn = ScriptedTransaction(pool, topping_up(2, 20, checkpoint=None))

    while not txn.is_terminal:
        await txn.step()

    assert database.log[-2][2] == {"capacity": 0, "by": 20, "pallet_id": 2}


async def test_adding_item_only_with_room(pool, database):
    database.on("count(*)", [{"items": 1}])
    txn = ScriptedTransaction(pool, adding_item_if_room(3, capacity=1))

    while not txn.is_terminal:
        await txn.step()

    assert not any("INSERT" in query for query in database.statements())
    assert txn.values == {"items": 1}
