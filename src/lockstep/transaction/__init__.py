"""
Scripted transactions: ordered steps run on one exclusive connection.
"""

from .interfaces import (
    IsolationLevel,
    OutcomeKind,
    StepOutcome,
    StepRecord,
    TransactionOutcome,
    TransactionState,
)
from .scripted import ScriptedTransaction
from .step import (
    Branch,
    Checkpoint,
    Commit,
    Execute,
    Pause,
    Rollback,
    Step,
    Values,
)

__all__ = [
    "Branch",
    "Checkpoint",
    "Commit",
    "Execute",
    "IsolationLevel",
    "OutcomeKind",
    "Pause",
    "Rollback",
    "ScriptedTransaction",
    "Step",
    "StepOutcome",
    "StepRecord",
    "TransactionOutcome",
    "TransactionState",
    "Values",
]
