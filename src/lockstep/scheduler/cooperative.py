from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple, Union

from lockstep.transaction import StepOutcome, TransactionOutcome

from .base import BaseScheduler, TransactionRef

logger = logging.getLogger(__name__)

PlanEntry = Union[TransactionRef, Tuple[TransactionRef, Optional[str]]]


class CooperativeScheduler(BaseScheduler):
    """Runs every transaction from a single task, one step at a time.

    Steps execute exactly in the order they are requested. Nothing here
    waits on a database lock on purpose: a script that makes one
    transaction wait on another under this discipline is stopped by the
    statement timeout, not by the scheduler.

    Example:

    ```python
    async with CooperativeScheduler(t1, t2) as scheduler:
        await scheduler.resume(t1, until="read")
        await scheduler.run_to_end(t2)
        await scheduler.run_to_end(t1)
    ```
    """

    discipline = "cooperative"

    async def step(self, transaction: TransactionRef) -> StepOutcome:
        """Advance one transaction by exactly one step"""
        txn = self.get(transaction)
        outcome = await txn.step()
        record = txn.history[-1]
        self.trace.append(record)
        logger.debug("Cooperative step %s", record)
        return outcome

    async def resume(
        self, transaction: TransactionRef, until: Optional[str] = None
    ) -> StepOutcome:
        """Run a transaction until it suspends or ends

        Args:
            transaction (ScriptedTransaction or str): What to run
            until (str, optional): Keep going through other checkpoints
                until this one is reached. Defaults to stopping at the first
                checkpoint.

        Returns:
            StepOutcome: `SUSPENDED` at the checkpoint, or the terminal
                outcome if the transaction ended first
        """
        txn = self.get(transaction)
        logger.debug(
            "Handing control to %s%s",
            txn.name,
            f" until {until}" if until else "",
        )
        while True:
            outcome = await self.step(txn)
            if outcome is StepOutcome.SUSPENDED:
                if until is None or txn.checkpoint == until:
                    return outcome
            elif txn.is_terminal:
                if until is not None:
                    logger.debug(
                        "%s ended as %s before reaching %s",
                        txn.name,
                        outcome.value,
                        until,
                    )
                return outcome

    async def run_to_end(self, transaction: TransactionRef) -> StepOutcome:
        """Run a transaction through all its remaining checkpoints"""
        txn = self.get(transaction)
        outcome = StepOutcome.CONTINUED
        while not txn.is_terminal:
            outcome = await self.step(txn)
        return outcome

    async def run(
        self, plan: Sequence[PlanEntry]
    ) -> Dict[str, TransactionOutcome]:
        """Execute a plan of hand-offs in order

        Each entry is either a transaction, which runs to the end, or a
        `(transaction, checkpoint)` pair, which runs until that checkpoint.
        """
        for entry in plan:
            if isinstance(entry, tuple):
                transaction, until = entry
                await self.resume(transaction, until=until)
            else:
                await self.run_to_end(entry)
        return self.outcomes()
