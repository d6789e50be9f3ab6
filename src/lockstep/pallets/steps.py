from __future__ import annotations

from typing import List, Optional

from lockstep.transaction import Branch, Checkpoint, Execute, Step, Values


def read_capacity(
    pallet_id: int, *, for_update: bool = False, into: str = "capacity"
) -> Execute:
    lock = " FOR UPDATE" if for_update else ""
    return Execute(
        f"SELECT capacity FROM pallets WHERE id = $pallet_id{lock}",
        {"pallet_id": pallet_id},
        into=into,
        scalar=True,
    )


def count_items(pallet_id: int, *, into: str = "items") -> Execute:
    return Execute(
        "SELECT count(*) AS items FROM items WHERE pallet_id = $pallet_id",
        {"pallet_id": pallet_id},
        into=into,
        scalar=True,
    )


def has_capacity(values: Values) -> bool:
    return values["capacity"] > 0


def decrementing(
    pallet_id: int,
    *,
    from_read: bool = False,
    for_update: bool = False,
    checkpoint: Optional[str] = "read",
) -> List[Step]:
    """Take one unit of capacity if the pallet seemed to have room

    With `from_read` the new capacity is computed from the value read
    earlier instead of from the row at write time.
    """
    if from_read:
        update = Execute(
            "UPDATE pallets SET capacity = $capacity - 1 "
            "WHERE id = $pallet_id RETURNING capacity",
            lambda values: {
                "capacity": values["capacity"],
                "pallet_id": pallet_id,
            },
            into="remaining",
            scalar=True,
        )
    else:
        update = Execute(
            "UPDATE pallets SET capacity = capacity - 1 "
            "WHERE id = $pallet_id RETURNING capacity",
            {"pallet_id": pallet_id},
            into="remaining",
            scalar=True,
        )

    steps: List[Step] = [read_capacity(pallet_id, for_update=for_update)]
    if checkpoint:
        steps.append(Checkpoint(checkpoint))
    steps.append(Branch(has_capacity, then=[update]))
    return steps


def topping_up(
    pallet_id: int, by: int, *, checkpoint: Optional[str] = "read"
) -> List[Step]:
    """Add `by` to the capacity that was read, not to the current one"""
    steps: List[Step] = [read_capacity(pallet_id)]
    if checkpoint:
        steps.append(Checkpoint(checkpoint))
    steps.append(
        Execute(
            "UPDATE pallets SET capacity = $capacity + $by "
            "WHERE id = $pallet_id",
            lambda values: {
                "capacity": values["capacity"],
                "by": by,
                "pallet_id": pallet_id,
            },
        )
    )
    return steps


def adding_item_if_room(
    pallet_id: int, capacity: int, *, checkpoint: Optional[str] = "read"
) -> List[Step]:
    """Insert an item unless the pallet already holds `capacity` items"""

    def has_room(values: Values) -> bool:
        return values["items"] < capacity

    steps: List[Step] = [count_items(pallet_id)]
    if checkpoint:
        steps.append(Checkpoint(checkpoint))
    steps.append(
        Branch(
            has_room,
            then=[
                Execute(
                    "INSERT INTO items (name, pallet_id, code) "
                    "VALUES ('item', $pallet_id, 'added')",
                    {"pallet_id": pallet_id},
                )
            ],
        )
    )
    return steps
