from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from lockstep.scenario import Mismatch


class ErrorKind(Enum):
    """Classification of a failed statement"""

    SERIALIZATION_FAILURE = "serialization_failure"
    DEADLOCK_DETECTED = "deadlock_detected"
    STATEMENT_TIMEOUT = "statement_timeout"
    OTHER_STATEMENT_ERROR = "other_statement_error"


class LockstepError(Exception):
    ...


class PoolExhausted(LockstepError):
    """Raised when no connection could be checked out in time"""


class InvalidState(LockstepError):
    """Raised when the harness is driven in a way the script does not allow"""


class StatementError(LockstepError):
    kind = ErrorKind.OTHER_STATEMENT_ERROR

    def __init__(
        self,
        message: str,
        sql_state: Optional[str] = None,
        query: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.sql_state = sql_state
        self.query = query

    def __str__(self) -> str:
        state = f"[{self.sql_state}] " if self.sql_state else ""
        return f"{state}{self.message}"


class SerializationFailure(StatementError):
    kind = ErrorKind.SERIALIZATION_FAILURE


class DeadlockDetected(StatementError):
    kind = ErrorKind.DEADLOCK_DETECTED


class OtherStatementError(StatementError):
    kind = ErrorKind.OTHER_STATEMENT_ERROR


class StatementTimeout(StatementError):
    kind = ErrorKind.STATEMENT_TIMEOUT


class ScenarioMismatch(LockstepError, AssertionError):
    def __init__(self, scenario: str, mismatches: Sequence[Mismatch]) -> None:
        self.scenario = scenario
        self.mismatches = list(mismatches)
        lines = [f"Scenario {scenario} did not match expectations:"]
        lines.extend(f"  - {mismatch}" for mismatch in self.mismatches)
        super().__init__("\n".join(lines))


SQL_STATE_ERRORS = {
    "40001": SerializationFailure,
    "40P01": DeadlockDetected,
    "57014": StatementTimeout,
    "55P03": StatementTimeout,
}


def classify(error: Exception, query: str = "") -> StatementError:
    sql_state = getattr(error, "sqlstate", None)
    if sql_state is None:
        diag = getattr(error, "diag", None)
        sql_state = getattr(diag, "sqlstate", None)
    error_class = SQL_STATE_ERRORS.get(sql_state or "", OtherStatementError)
    message = str(error).strip() or error.__class__.__name__
    return error_class(message, sql_state=sql_state, query=query)
