from __future__ import annotations

import logging
from typing import List

from lockstep.scenario import Scenario

logger = logging.getLogger(__name__)

CREATE_PALLETS = """
CREATE TABLE IF NOT EXISTS pallets (
    id BIGSERIAL PRIMARY KEY,
    capacity INTEGER
)
"""

CREATE_ITEMS = """
CREATE TABLE IF NOT EXISTS items (
    id BIGSERIAL PRIMARY KEY,
    name VARCHAR,
    pallet_id BIGINT,
    code VARCHAR
)
"""

CREATE_SKUS = """
CREATE TABLE IF NOT EXISTS skus (
    id BIGSERIAL PRIMARY KEY,
    code VARCHAR,
    name VARCHAR
)
"""


async def create_schema(scenario: Scenario) -> None:
    for statement in (CREATE_PALLETS, CREATE_ITEMS, CREATE_SKUS):
        await scenario.execute(statement)


async def create_pallet(scenario: Scenario, capacity: int) -> int:
    rows = await scenario.execute(
        "INSERT INTO pallets (capacity) VALUES ($capacity) RETURNING id",
        {"capacity": capacity},
    )
    return rows.scalar()


async def add_items(
    scenario: Scenario, pallet_id: int, count: int, name: str = "item"
) -> None:
    await scenario.execute(
        """
        INSERT INTO items (name, pallet_id, code)
        SELECT $name, $pallet_id, substr(md5(random()::text), 1, 8)
        FROM generate_series(1, $count)
        """,
        {"name": name, "pallet_id": pallet_id, "count": count},
    )


async def seed(
    scenario: Scenario,
    pallets: int = 100,
    capacity: int = 10,
    items_per_pallet: int = 9,
) -> List[int]:
    """Create `pallets` pallets, each holding `items_per_pallet` items"""
    rows = await scenario.execute(
        """
        INSERT INTO pallets (capacity)
        SELECT $capacity FROM generate_series(1, $pallets)
        RETURNING id
        """,
        {"capacity": capacity, "pallets": pallets},
    )
    ids = rows.column("id")
    if items_per_pallet:
        await scenario.execute(
            """
            INSERT INTO items (name, pallet_id, code)
            SELECT 'item', pallet_id, substr(md5(random()::text), 1, 8)
            FROM unnest($ids::bigint[]) AS pallet_id,
                 generate_series(1, $per_pallet)
            """,
            {"ids": ids, "per_pallet": items_per_pallet},
        )
    logger.info(
        "Seeded %d pallets with %d items each", len(ids), items_per_pallet
    )
    return ids
