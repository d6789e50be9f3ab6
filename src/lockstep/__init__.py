from importlib.metadata import version

from .base.interface import BaseInterface
from .exception import (
    DeadlockDetected,
    ErrorKind,
    InvalidState,
    LockstepError,
    OtherStatementError,
    PoolExhausted,
    ScenarioMismatch,
    SerializationFailure,
    StatementError,
    StatementTimeout,
)
from .lease import ConnectionLease
from .scenario import (
    Expectation,
    RowExpectation,
    Scenario,
    ScenarioOutcome,
    ScenarioReport,
    exit_code,
    run_scenario,
)
from .scheduler import CooperativeScheduler, PreemptiveScheduler
from .sql.executor import RowSet, StatementExecutor
from .sql.postgres.executor import PostgresExecutor
from .sql.postgres.interface import PostgresPool
from .transaction import (
    Branch,
    Checkpoint,
    Commit,
    Execute,
    IsolationLevel,
    OutcomeKind,
    Pause,
    Rollback,
    ScriptedTransaction,
    StepOutcome,
    TransactionState,
)

__version__ = version("lockstep")

__all__ = (
    "BaseInterface",
    "Branch",
    "Checkpoint",
    "Commit",
    "ConnectionLease",
    "CooperativeScheduler",
    "DeadlockDetected",
    "ErrorKind",
    "Execute",
    "Expectation",
    "InvalidState",
    "IsolationLevel",
    "LockstepError",
    "OtherStatementError",
    "OutcomeKind",
    "Pause",
    "PoolExhausted",
    "PostgresExecutor",
    "PostgresPool",
    "PreemptiveScheduler",
    "Rollback",
    "RowExpectation",
    "RowSet",
    "Scenario",
    "ScenarioMismatch",
    "ScenarioOutcome",
    "ScenarioReport",
    "ScriptedTransaction",
    "SerializationFailure",
    "StatementError",
    "StatementExecutor",
    "StatementTimeout",
    "StepOutcome",
    "TransactionState",
    "exit_code",
    "run_scenario",
)
