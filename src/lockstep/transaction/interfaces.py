from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from lockstep.exception import StatementError


class IsolationLevel(Enum):
    """SQL transaction isolation levels"""

    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class TransactionState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    (
        TransactionState.COMMITTED,
        TransactionState.ROLLED_BACK,
        TransactionState.FAILED,
    )
)


class StepOutcome(Enum):
    """What a single call to `ScriptedTransaction.step()` led to"""

    CONTINUED = "continued"
    SUSPENDED = "suspended"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class OutcomeKind(Enum):
    """Terminal outcome of a transaction, as asserted by scenarios"""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SERIALIZATION_FAILURE = "serialization_failure"
    DEADLOCK_DETECTED = "deadlock_detected"
    STATEMENT_TIMEOUT = "statement_timeout"
    OTHER_STATEMENT_ERROR = "other_statement_error"
    ERROR = "error"
    PENDING = "pending"


@dataclass
class StepRecord:
    transaction: str
    index: int
    step: str
    outcome: StepOutcome

    def __str__(self) -> str:
        outcome = self.outcome.value
        return f"{self.transaction}#{self.index} {self.step} -> {outcome}"


@dataclass
class TransactionOutcome:
    name: str
    state: TransactionState
    error: Optional[BaseException] = None
    failed_step: Optional[int] = None
    failed_step_description: Optional[str] = None

    @property
    def kind(self) -> OutcomeKind:
        if self.state is TransactionState.COMMITTED:
            return OutcomeKind.COMMITTED
        if self.state is TransactionState.ROLLED_BACK:
            return OutcomeKind.ROLLED_BACK
        if self.state is TransactionState.FAILED:
            if isinstance(self.error, StatementError):
                return OutcomeKind(self.error.kind.value)
            return OutcomeKind.ERROR
        return OutcomeKind.PENDING

    def __str__(self) -> str:
        text = f"{self.name}: {self.kind.value}"
        if self.failed_step is not None:
            text += (
                f" at step {self.failed_step} "
                f"({self.failed_step_description})"
            )
        if self.error is not None:
            text += f": {self.error}"
        return text
