from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from lockstep.base.interface import BaseInterface
from lockstep.exception import InvalidState, StatementError
from lockstep.lease import ConnectionLease
from lockstep.sql.executor import StatementExecutor
from lockstep.sql.postgres.executor import PostgresExecutor

from .interfaces import (
    IsolationLevel,
    StepOutcome,
    StepRecord,
    TransactionOutcome,
    TransactionState,
)
from .step import Branch, Checkpoint, Commit, Execute, Pause, Rollback, Step

logger = logging.getLogger(__name__)

CEILING_GRACE = 1.0


def default_ceiling(pool: BaseInterface) -> Optional[float]:
    """Client-side ceiling that backs up the server's statement_timeout"""
    if pool.statement_timeout is None:
        return None
    return pool.statement_timeout + CEILING_GRACE


class ScriptedTransaction:
    """One logical transaction, run one step at a time.

    The transaction leases its own connection from `pool` and keeps it for
    its whole life. `BEGIN` and `SET TRANSACTION ISOLATION LEVEL` are issued
    lazily before the first SQL step, and `COMMIT` right after the last
    step unless the script commits or rolls back explicitly.

    Statement failures are captured as the transaction's outcome and end
    it; they are not raised out of `step()`. Calling `step()` on a finished
    transaction raises `InvalidState`.
    """

    def __init__(
        self,
        pool: BaseInterface,
        steps: Sequence[Step],
        *,
        name: Optional[str] = None,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
        executor: Optional[StatementExecutor] = None,
    ) -> None:
        self.name = name or f"txn_{uuid4().hex[:8]}"
        self.pool = pool
        self.isolation_level = isolation_level
        self.executor = executor or PostgresExecutor(
            ceiling=default_ceiling(pool)
        )
        self.values: Dict[str, Any] = {}
        self.history: List[StepRecord] = []
        self._steps: List[Step] = list(steps)
        self._position = 0
        self._state = TransactionState.NOT_STARTED
        self._lease: Optional[ConnectionLease] = None
        self._begun = False
        self._checkpoint: Optional[str] = None
        self._error: Optional[BaseException] = None
        self._failed_step: Optional[int] = None
        self._failed_step_description: Optional[str] = None

        logger.debug(
            "Transaction %s created with %d steps at %s",
            self.name,
            len(self._steps),
            self.isolation_level.value,
        )

    def __str__(self) -> str:
        return f"<ScriptedTransaction {self.name} ({self._state.value})>"

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def checkpoint(self) -> Optional[str]:
        """Name of the checkpoint the transaction is suspended at"""
        return self._checkpoint

    @property
    def position(self) -> int:
        return self._position

    @property
    def current_step(self) -> Optional[Step]:
        """The step most recently started, if any"""
        if 0 < self._position <= len(self._steps):
            return self._steps[self._position - 1]
        return None

    @property
    def lease(self) -> Optional[ConnectionLease]:
        return self._lease

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def outcome(self) -> TransactionOutcome:
        return TransactionOutcome(
            name=self.name,
            state=self._state,
            error=self._error,
            failed_step=self._failed_step,
            failed_step_description=self._failed_step_description,
        )

    async def open(self) -> ConnectionLease:
        """Lease this transaction's connection if it does not hold one yet"""
        if self._state.is_terminal:
            raise InvalidState(
                f"Transaction {self.name} already {self._state.value}"
            )
        if self._lease is None:
            self._lease = await self.pool.acquire(owner=self.name)
        return self._lease

    async def step(self) -> StepOutcome:
        """Advance exactly one step"""
        if self._state.is_terminal:
            raise InvalidState(
                f"Transaction {self.name} already {self._state.value}; "
                "no further steps may run"
            )
        await self.open()

        if self._state is TransactionState.SUSPENDED:
            logger.debug(
                "Transaction %s resuming from checkpoint %s",
                self.name,
                self._checkpoint,
            )
        self._state = TransactionState.RUNNING
        self._checkpoint = None

        index = self._position
        step: Optional[Step] = None
        committing = False
        try:
            if index < len(self._steps):
                step = self._steps[index]
                self._position += 1
                outcome = await self._perform(step)
            else:
                outcome = StepOutcome.CONTINUED
            if (
                outcome is StepOutcome.CONTINUED
                and self._position >= len(self._steps)
            ):
                committing = True
                outcome = await self._finish()
        except StatementError as e:
            if committing:
                # The implicit COMMIT after the last step
                outcome = await self._fail(
                    e, self._position, None, description="COMMIT"
                )
            else:
                outcome = await self._fail(e, index, step)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Transaction %s step %d raised unexpectedly: %s",
                self.name,
                index,
                e,
            )
            await self._fail(e, index, step)
            raise

        self.history.append(
            StepRecord(
                transaction=self.name,
                index=index,
                step=step.describe() if step else "end of script",
                outcome=outcome,
            )
        )
        return outcome

    async def fail(self, error: BaseException) -> None:
        """End the transaction with `error` from outside the script.

        Used by schedulers when a transaction has to be given up, e.g. at
        a join deadline. Does nothing if the transaction already ended.
        """
        if self._state.is_terminal:
            return
        index = max(self._position - 1, 0)
        step = self._steps[index] if index < len(self._steps) else None
        await self._fail(error, index, step)

    async def close(self) -> None:
        """Release the lease, rolling back a transaction left unfinished"""
        if not self._state.is_terminal and self._lease is not None:
            logger.info(
                "Transaction %s abandoned while %s, rolling back",
                self.name,
                self._state.value,
            )
            self._state = TransactionState.ROLLED_BACK
        await self._release()

    async def _perform(self, step: Step) -> StepOutcome:
        logger.debug("Transaction %s step: %s", self.name, step)
        if isinstance(step, Checkpoint):
            self._state = TransactionState.SUSPENDED
            self._checkpoint = step.name
            logger.debug(
                "Transaction %s suspended at checkpoint %s",
                self.name,
                step.name,
            )
            return StepOutcome.SUSPENDED

        if isinstance(step, Pause):
            await asyncio.sleep(step.seconds)
            return StepOutcome.CONTINUED

        if isinstance(step, Branch):
            chosen = list(step.choose(self.values))
            self._steps[self._position : self._position] = chosen
            return StepOutcome.CONTINUED

        if isinstance(step, Commit):
            return await self._finish()

        if isinstance(step, Rollback):
            await self._end("ROLLBACK", TransactionState.ROLLED_BACK)
            return StepOutcome.ROLLED_BACK

        if isinstance(step, Execute):
            await self._begin()
            rows = await self.executor.execute(
                self._require_lease(),
                step.query,
                params=step.resolve_params(self.values),
                posargs=step.resolve_posargs(self.values),
            )
            if step.into:
                self.values[step.into] = rows.scalar() if step.scalar else rows
            return StepOutcome.CONTINUED

        raise InvalidState(f"Transaction {self.name} cannot run {step!r}")

    async def _begin(self) -> None:
        if self._begun:
            return
        lease = self._require_lease()
        await self.executor.execute(lease, "BEGIN")
        self._begun = True
        await self.executor.execute(
            lease,
            f"SET TRANSACTION ISOLATION LEVEL {self.isolation_level.value}",
        )
        logger.debug(
            "Transaction %s began at %s",
            self.name,
            self.isolation_level.value,
        )

    async def _finish(self) -> StepOutcome:
        await self._end("COMMIT", TransactionState.COMMITTED)
        return StepOutcome.COMMITTED

    async def _end(self, command: str, state: TransactionState) -> None:
        if self._begun:
            await self.executor.execute(self._require_lease(), command)
        self._state = state
        logger.info("Transaction %s %s", self.name, state.value)
        await self._release()

    async def _fail(
        self,
        error: BaseException,
        index: int,
        step: Optional[Step],
        description: Optional[str] = None,
    ) -> StepOutcome:
        self._state = TransactionState.FAILED
        self._error = error
        self._failed_step = index
        if description is None:
            description = step.describe() if step else "end of script"
        self._failed_step_description = description
        logger.info(
            "Transaction %s failed at step %d: %s", self.name, index, error
        )
        await self._release()
        return StepOutcome.FAILED

    async def _release(self) -> None:
        if self._lease is not None:
            await self._lease.release()

    def _require_lease(self) -> ConnectionLease:
        if self._lease is None:
            raise InvalidState(f"Transaction {self.name} holds no lease")
        return self._lease

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
