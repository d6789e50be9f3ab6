from .scenarios import SCENARIOS, run_all
from .schema import add_items, create_pallet, create_schema, seed

__all__ = (
    "SCENARIOS",
    "add_items",
    "create_pallet",
    "create_schema",
    "run_all",
    "seed",
)
