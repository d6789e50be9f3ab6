from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set, Tuple

from lockstep.exception import InvalidState, LockstepError, StatementTimeout
from lockstep.transaction import (
    Pause,
    ScriptedTransaction,
    StepOutcome,
    TransactionOutcome,
)

from .base import BaseScheduler, TransactionRef

logger = logging.getLogger(__name__)


class PreemptiveScheduler(BaseScheduler):
    """Runs each transaction on its own task and connection.

    Transactions start in the order given to `start()`; after that the
    database's lock manager decides who waits for whom. `await_all()` is
    the join barrier and must be awaited before the final state is read.
    """

    discipline = "preemptive"

    def __init__(self, *transactions: ScriptedTransaction) -> None:
        super().__init__(*transactions)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._arrivals: Dict[Tuple[str, str], asyncio.Event] = {}

    async def start(self, *transactions: TransactionRef) -> None:
        """Start transactions, in order, each on its own task

        Without arguments every registered transaction that has not been
        started yet is started, in registration order.
        """
        if transactions:
            for transaction in transactions:
                if isinstance(transaction, ScriptedTransaction):
                    self.register(transaction)
            selected = [self.get(transaction) for transaction in transactions]
        else:
            selected = [
                txn for txn in self.transactions if txn.name not in self._tasks
            ]

        for txn in selected:
            if txn.name in self._tasks:
                raise InvalidState(f"Transaction {txn.name} already started")
            await txn.open()

        for txn in selected:
            self._tasks[txn.name] = asyncio.create_task(
                self._drive(txn), name=f"lockstep:{txn.name}"
            )
            logger.info("Started %s", txn.name)
            # Give the new task its first turn before starting the next one
            await asyncio.sleep(0)

    async def reached(
        self,
        transaction: TransactionRef,
        checkpoint: str,
        timeout: Optional[float] = None,
    ) -> bool:
        """Wait until a started transaction passes `checkpoint`

        Returns:
            bool: Whether the checkpoint was reached. `False` if the
                transaction ended or `timeout` expired first.
        """
        txn = self.get(transaction)
        task = self._tasks.get(txn.name)
        if task is None:
            raise InvalidState(f"Transaction {txn.name} was not started")
        event = self._arrival(txn.name, checkpoint)
        if event.is_set():
            return True

        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait(
                {waiter, task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not waiter.done():
                waiter.cancel()
        return event.is_set()

    async def await_all(
        self, timeout: Optional[float] = None
    ) -> Dict[str, TransactionOutcome]:
        """Join every started transaction

        Transactions still running when `timeout` expires are cancelled and
        end as `StatementTimeout`. That includes a transaction cancelled
        inside a `Pause`; its error message says no statement was running.

        An unexpected error inside a transaction task, such as a scripting
        mistake raising `InvalidState`, ends the join as soon as it happens:
        the other transactions are cancelled and rolled back, and the error
        is raised from here.

        Returns:
            Dict[str, TransactionOutcome]: Outcome of every transaction
        """
        tasks = dict(self._tasks)
        pending: Set[asyncio.Task] = set()
        if tasks:
            _, pending = await asyncio.wait(
                tasks.values(),
                timeout=timeout,
                return_when=asyncio.FIRST_EXCEPTION,
            )
        error = self._task_error(tasks)

        for name, task in tasks.items():
            if task not in pending:
                continue
            if error is None:
                logger.warning(
                    "Transaction %s did not settle within %s seconds, "
                    "cancelling",
                    name,
                    timeout,
                )
            else:
                logger.warning(
                    "Cancelling %s after another transaction raised %r",
                    name,
                    error,
                )
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for name, task in tasks.items():
                if task in pending:
                    txn = self._transactions[name]
                    await txn.fail(self._abandoned(txn, timeout, error))

        logger.info(
            "Preemptive scheduler settled %d transactions", len(tasks)
        )
        if error is not None:
            raise error
        return self.outcomes()

    async def close(self) -> None:
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        await super().close()

    async def _drive(self, txn: ScriptedTransaction) -> None:
        while not txn.is_terminal:
            outcome = await txn.step()
            record = txn.history[-1]
            self.trace.append(record)
            if outcome is StepOutcome.SUSPENDED and txn.checkpoint:
                self._arrival(txn.name, txn.checkpoint).set()

    def _arrival(self, name: str, checkpoint: str) -> asyncio.Event:
        key = (name, checkpoint)
        if key not in self._arrivals:
            self._arrivals[key] = asyncio.Event()
        return self._arrivals[key]

    @staticmethod
    def _task_error(
        tasks: Dict[str, asyncio.Task]
    ) -> Optional[BaseException]:
        for task in tasks.values():
            if task.done() and not task.cancelled():
                error = task.exception()
                if error is not None:
                    return error
        return None

    @staticmethod
    def _abandoned(
        txn: ScriptedTransaction,
        timeout: Optional[float],
        error: Optional[BaseException],
    ) -> LockstepError:
        if error is not None:
            return LockstepError(
                f"Transaction {txn.name} aborted after another transaction "
                f"raised {type(error).__name__}"
            )
        message = (
            f"Transaction {txn.name} did not settle within {timeout} seconds"
        )
        step = txn.current_step
        if isinstance(step, Pause):
            message += f"; cancelled in {step} with no statement running"
        elif step is not None:
            message += f"; cancelled in {step}"
        return StatementTimeout(message)
