"""
Scenarios: a set of scripted transactions on one pool, plus the assertion
of what they left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
)

from lockstep.base.interface import BaseInterface
from lockstep.exception import InvalidState, ScenarioMismatch
from lockstep.scheduler import (
    BaseScheduler,
    CooperativeScheduler,
    PreemptiveScheduler,
)
from lockstep.sql.executor import RowSet, StatementExecutor
from lockstep.sql.postgres.executor import PostgresExecutor
from lockstep.transaction import (
    Execute,
    IsolationLevel,
    OutcomeKind,
    ScriptedTransaction,
    Step,
    StepRecord,
    TransactionOutcome,
)
from lockstep.transaction.scripted import default_ceiling

logger = logging.getLogger(__name__)


@dataclass
class RowExpectation:
    """Rows a query should return once every transaction has settled.

    Only the columns named in the expected rows are compared.
    """

    query: str
    rows: List[Dict[str, Any]]
    params: Optional[Dict[str, Any]] = None


@dataclass
class Expectation:
    rows: Dict[str, RowExpectation] = field(default_factory=dict)
    transactions: Dict[str, OutcomeKind] = field(default_factory=dict)
    values: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class Mismatch:
    subject: str
    field: str
    expected: Any
    actual: Any
    step: Optional[str] = None

    def __str__(self) -> str:
        where = f" at {self.step}" if self.step else ""
        return (
            f"{self.subject}{where}: {self.field} expected "
            f"{self.expected!r}, got {self.actual!r}"
        )


@dataclass
class ScenarioOutcome:
    rows: Dict[str, RowSet]
    transactions: Dict[str, TransactionOutcome]
    values: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    trace: List[StepRecord] = field(default_factory=list)

    def kinds(self) -> Dict[str, OutcomeKind]:
        return {
            name: outcome.kind for name, outcome in self.transactions.items()
        }

    def diff(self, expected: Expectation) -> List[Mismatch]:
        mismatches: List[Mismatch] = []
        for name, kind in expected.transactions.items():
            outcome = self.transactions.get(name)
            if outcome is None:
                mismatches.append(
                    Mismatch(name, "outcome", kind.value, "<unknown>")
                )
            elif outcome.kind is not kind:
                step = None
                if outcome.failed_step is not None:
                    step = (
                        f"step {outcome.failed_step} "
                        f"({outcome.failed_step_description})"
                    )
                mismatches.append(
                    Mismatch(
                        name,
                        "outcome",
                        kind.value,
                        outcome.kind.value,
                        step=step,
                    )
                )

        for name, values in expected.values.items():
            captured = self.values.get(name, {})
            for key, value in values.items():
                actual = captured.get(key, "<not captured>")
                if isinstance(actual, RowSet) and not isinstance(value, list):
                    actual = actual.scalar()
                if actual != value:
                    mismatches.append(
                        Mismatch(name, f"value {key}", value, actual)
                    )

        for label, row_expectation in expected.rows.items():
            actual_rows = self.rows.get(label, RowSet())
            mismatches.extend(
                _diff_rows(label, row_expectation.rows, actual_rows)
            )
        return mismatches


def _diff_rows(
    label: str, expected: Sequence[Dict[str, Any]], actual: RowSet
) -> List[Mismatch]:
    subject = f"rows {label}"
    if len(expected) != len(actual):
        return [Mismatch(subject, "row count", len(expected), len(actual))]
    mismatches = []
    for index, (want, got) in enumerate(zip(expected, actual)):
        for column, value in want.items():
            if got.get(column) != value:
                mismatches.append(
                    Mismatch(
                        subject,
                        f"row {index} column {column}",
                        value,
                        got.get(column),
                    )
                )
    return mismatches


class Scenario:
    """Builds transactions on a shared pool and checks what they did.

    Example:

    ```python
    async with Scenario(pool, "lost update") as scenario:
        t1 = scenario.transaction(steps, name="t1")
        t2 = scenario.transaction(steps, name="t2")
        async with scenario.cooperative() as scheduler:
            await scheduler.run([(t1, "read"), (t2, "read"), t2, t1])
        await scenario.assert_outcome(expected)
    ```
    """

    def __init__(
        self,
        pool: BaseInterface,
        name: str = "scenario",
        *,
        executor: Optional[StatementExecutor] = None,
    ) -> None:
        self.pool = pool
        self.name = name
        self.executor = executor or PostgresExecutor(
            ceiling=default_ceiling(pool)
        )
        self._transactions: List[ScriptedTransaction] = []
        self._schedulers: List[BaseScheduler] = []

    @property
    def transactions(self) -> List[ScriptedTransaction]:
        return list(self._transactions)

    def transaction(
        self,
        steps: Sequence[Step],
        *,
        name: Optional[str] = None,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> ScriptedTransaction:
        transaction = ScriptedTransaction(
            self.pool,
            steps,
            name=name or f"t{len(self._transactions) + 1}",
            isolation_level=isolation_level,
            executor=self.executor,
        )
        if any(txn.name == transaction.name for txn in self._transactions):
            raise InvalidState(
                f"Scenario {self.name} already has a transaction named "
                f"{transaction.name}"
            )
        self._transactions.append(transaction)
        return transaction

    def cooperative(
        self, *transactions: ScriptedTransaction
    ) -> CooperativeScheduler:
        scheduler = CooperativeScheduler(
            *(transactions or self._transactions)
        )
        self._schedulers.append(scheduler)
        return scheduler

    def preemptive(
        self, *transactions: ScriptedTransaction
    ) -> PreemptiveScheduler:
        scheduler = PreemptiveScheduler(
            *(transactions or self._transactions)
        )
        self._schedulers.append(scheduler)
        return scheduler

    async def execute(
        self, query: str, params: Optional[Dict[str, Any]] = None
    ) -> RowSet:
        """Run one statement outside any scripted transaction"""
        async with self.pool.lease(owner=f"{self.name}:setup") as lease:
            return await self.executor.execute(lease, query, params=params)

    async def observe(
        self, probes: Dict[str, RowExpectation]
    ) -> ScenarioOutcome:
        """Read the final state through a fresh READ COMMITTED transaction

        Raises:
            InvalidState: A scripted transaction has not settled yet.
        """
        unsettled = [
            txn.name for txn in self._transactions if not txn.is_terminal
        ]
        if unsettled:
            raise InvalidState(
                f"Scenario {self.name} cannot be observed while "
                f"{', '.join(unsettled)} are still running"
            )

        observer = ScriptedTransaction(
            self.pool,
            [
                Execute(probe.query, probe.params, into=label)
                for label, probe in probes.items()
            ],
            name=f"{self.name}:observer",
            isolation_level=IsolationLevel.READ_COMMITTED,
            executor=self.executor,
        )
        async with observer:
            while not observer.is_terminal:
                await observer.step()
        if observer.error is not None:
            raise observer.error

        trace: List[StepRecord] = []
        for scheduler in self._schedulers:
            trace.extend(scheduler.trace)
        return ScenarioOutcome(
            rows={label: observer.values[label] for label in probes},
            transactions={
                txn.name: txn.outcome for txn in self._transactions
            },
            values={
                txn.name: dict(txn.values) for txn in self._transactions
            },
            trace=trace,
        )

    async def assert_outcome(self, expected: Expectation) -> ScenarioOutcome:
        """Observe the final state and compare it to `expected`

        Raises:
            ScenarioMismatch: With one entry per difference found
        """
        outcome = await self.observe(expected.rows)
        mismatches = outcome.diff(expected)
        if mismatches:
            logger.info(
                "Scenario %s produced %d mismatches",
                self.name,
                len(mismatches),
            )
            raise ScenarioMismatch(self.name, mismatches)
        logger.info("Scenario %s matched expectations", self.name)
        return outcome

    async def close(self) -> None:
        for scheduler in self._schedulers:
            await scheduler.close()
        for transaction in self._transactions:
            await transaction.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


@dataclass
class ScenarioReport:
    name: str
    passed: bool
    outcome: Optional[ScenarioOutcome] = None
    mismatches: List[Mismatch] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"{'PASS' if self.passed else 'FAIL'} {self.name}"]
        lines.extend(f"    {mismatch}" for mismatch in self.mismatches)
        if self.outcome is not None:
            lines.extend(
                f"    {outcome}"
                for outcome in self.outcome.transactions.values()
            )
        return "\n".join(lines)


ScenarioScript = Callable[[Scenario], Awaitable[ScenarioOutcome]]


async def run_scenario(
    pool: BaseInterface, name: str, script: ScenarioScript
) -> ScenarioReport:
    """Run one scenario script and report whether it matched.

    Only `ScenarioMismatch` becomes a failed report; harness errors such
    as `PoolExhausted` or `InvalidState` propagate.
    """
    async with Scenario(pool, name) as scenario:
        try:
            outcome = await script(scenario)
        except ScenarioMismatch as e:
            return ScenarioReport(name, False, mismatches=e.mismatches)
    return ScenarioReport(name, True, outcome=outcome)


def exit_code(reports: Iterable[ScenarioReport]) -> int:
    return 0 if all(report.passed for report in reports) else 1
