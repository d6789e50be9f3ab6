import pytest
from psycopg import errors

from lockstep import (
    Branch,
    Checkpoint,
    Commit,
    Execute,
    InvalidState,
    IsolationLevel,
    OutcomeKind,
    Pause,
    PoolExhausted,
    Rollback,
    ScriptedTransaction,
    SerializationFailure,
    StepOutcome,
    TransactionState,
)

from .fakes import sql_only


async def test_begins_lazily(pool, database):
    txn = ScriptedTransaction(
        pool, [Execute("SELECT 1"), Execute("SELECT 2")], name="t1"
    )

    assert txn.state is TransactionState.NOT_STARTED
    assert database.statements() == []

    assert await txn.step() is StepOutcome.CONTINUED
    assert txn.state is TransactionState.RUNNING
    assert database.statements() == [
        "BEGIN",
        "SET TRANSACTION ISOLATION LEVEL READ COMMITTED",
        "SELECT 1",
    ]


async def test_commits_with_final_step(pool, database):
    txn = ScriptedTransaction(
        pool, [Execute("SELECT 1"), Execute("SELECT 2")], name="t1"
    )

    await txn.step()
    outcome = await txn.step()

    assert outcome is StepOutcome.COMMITTED
    assert txn.state is TransactionState.COMMITTED
    assert database.statements()[-2:] == ["SELECT 2", "COMMIT"]
    assert txn.lease.is_released
    assert pool.leased == 0


@pytest.mark.parametrize(
    "level,text",
    (
        (IsolationLevel.READ_COMMITTED, "READ COMMITTED"),
        (IsolationLevel.REPEATABLE_READ, "REPEATABLE READ"),
        (IsolationLevel.SERIALIZABLE, "SERIALIZABLE"),
    ),
)
async def test_isolation_level_set_once(pool, database, level, text):
    txn = ScriptedTransaction(
        pool,
        [Execute("SELECT 1"), Execute("SELECT 2"), Execute("SELECT 3")],
        isolation_level=level,
    )

    while not txn.is_terminal:
        await txn.step()

    statements = database.statements()
    assert statements.count("BEGIN") == 1
    assert statements.count(f"SET TRANSACTION ISOLATION LEVEL {text}") == 1
    assert statements[1] == f"SET TRANSACTION ISOLATION LEVEL {text}"


async def test_checkpoint_suspends_without_sql(pool, database):
    txn = ScriptedTransaction(
        pool,
        [Execute("SELECT 1"), Checkpoint("read"), Execute("SELECT 2")],
        name="t1",
    )

    await txn.step()
    before = len(database.log)
    outcome = await txn.step()

    assert outcome is StepOutcome.SUSPENDED
    assert txn.state is TransactionState.SUSPENDED
    assert txn.checkpoint == "read"
    assert len(database.log) == before

    assert await txn.step() is StepOutcome.COMMITTED
    assert txn.checkpoint is None


async def test_trailing_checkpoint_commits_on_resume(pool, database):
    txn = ScriptedTransaction(pool, [Execute("SELECT 1"), Checkpoint("end")])

    assert await txn.step() is StepOutcome.CONTINUED
    assert await txn.step() is StepOutcome.SUSPENDED
    assert await txn.step() is StepOutcome.COMMITTED
    assert database.statements()[-1] == "COMMIT"
    assert txn.history[-1].step == "end of script"


async def test_script_without_sql_never_begins(pool, database):
    txn = ScriptedTransaction(pool, [Checkpoint("only"), Pause(0)])

    assert await txn.step() is StepOutcome.SUSPENDED
    assert await txn.step() is StepOutcome.COMMITTED
    assert database.statements() == []


async def test_explicit_rollback(pool, database):
    txn = ScriptedTransaction(
        pool, [Execute("UPDATE pallets SET capacity = 0"), Rollback()]
    )

    await txn.step()
    outcome = await txn.step()

    assert outcome is StepOutcome.ROLLED_BACK
    assert txn.outcome.kind is OutcomeKind.ROLLED_BACK
    assert database.statements()[-1] == "ROLLBACK"
    assert "COMMIT" not in database.statements()


async def test_explicit_commit_ends_script(pool, database):
    txn = ScriptedTransaction(
        pool, [Execute("SELECT 1"), Commit(), Execute("SELECT 2")]
    )

    await txn.step()
    assert await txn.step() is StepOutcome.COMMITTED
    assert "SELECT 2" not in database.statements()


async def test_statement_failure_is_captured(pool, database):
    database.on("UPDATE", errors.SerializationFailure("could not serialize"))
    txn = ScriptedTransaction(
        pool,
        [
            Execute("SELECT 0"),
            Execute("UPDATE pallets SET capacity = capacity + 1"),
            Execute("SELECT 1"),
        ],
        name="main",
    )

    await txn.step()
    outcome = await txn.step()

    assert outcome is StepOutcome.FAILED
    assert txn.state is TransactionState.FAILED
    assert isinstance(txn.error, SerializationFailure)
    assert txn.outcome.kind is OutcomeKind.SERIALIZATION_FAILURE
    assert txn.outcome.failed_step == 1
    assert "UPDATE pallets" in txn.outcome.failed_step_description
    assert database.statements()[-1] == "ROLLBACK"
    assert "SELECT 1" not in database.statements()
    assert txn.lease.is_released


async def test_failed_commit_is_captured(pool, database):
    database.on("COMMIT", errors.SerializationFailure("could not serialize"))
    txn = ScriptedTransaction(
        pool, [Execute("INSERT INTO items DEFAULT VALUES")]
    )

    outcome = await txn.step()

    assert outcome is StepOutcome.FAILED
    assert txn.outcome.kind is OutcomeKind.SERIALIZATION_FAILURE
    assert txn.outcome.failed_step == 1
    assert txn.outcome.failed_step_description == "COMMIT"
    assert txn.error.query == "COMMIT"
    assert pool.leased == 0


@pytest.mark.parametrize("failing", (False, True))
async def test_terminal_states_are_sticky(pool, database, failing):
    if failing:
        database.on("SELECT", errors.DeadlockDetected("deadlock detected"))
    txn = ScriptedTransaction(pool, [Execute("SELECT 1")])

    await txn.step()
    assert txn.is_terminal
    state = txn.state

    with pytest.raises(InvalidState):
        await txn.step()
    assert txn.state is state


async def test_captured_values_and_branch(pool, database):
    database.on("SELECT capacity", [{"capacity": 1}])

    def has_capacity(values):
        return values["capacity"] > 0

    txn = ScriptedTransaction(
        pool,
        [
            Execute(
                "SELECT capacity FROM pallets WHERE id = $id",
                {"id": 3},
                into="capacity",
                scalar=True,
            ),
            Branch(
                has_capacity,
                then=[
                    Execute(
                        "UPDATE pallets SET capacity = $capacity - 1",
                        lambda values: {"capacity": values["capacity"]},
                    )
                ],
                otherwise=[Execute("SELECT 'full'")],
            ),
        ],
    )

    while not txn.is_terminal:
        await txn.step()

    assert txn.values == {"capacity": 1}
    assert sql_only(database.statements()) == [
        "SELECT capacity FROM pallets WHERE id = %(id)s",
        "UPDATE pallets SET capacity = %(capacity)s - 1",
    ]
    assert database.log[-2][2] == {"capacity": 1}
    assert [record.step for record in txn.history] == [
        "Execute('SELECT capacity FROM pallets WHERE id = $id')",
        "Branch(has_capacity)",
        "Execute('UPDATE pallets SET capacity = $capacity - 1')",
    ]


async def test_branch_otherwise(pool, database):
    database.on("SELECT capacity", [{"capacity": 0}])
    txn = ScriptedTransaction(
        pool,
        [
            Execute("SELECT capacity FROM pallets", into="rows"),
            Branch(
                lambda values: values["rows"].scalar() > 0,
                then=[Execute("UPDATE pallets SET capacity = 0")],
            ),
        ],
    )

    while not txn.is_terminal:
        await txn.step()

    assert txn.state is TransactionState.COMMITTED
    assert sql_only(database.statements()) == ["SELECT capacity FROM pallets"]


async def test_unexpected_error_propagates_and_releases(pool):
    txn = ScriptedTransaction(
        pool,
        [
            Execute("SELECT 1"),
            Branch(lambda values: values["missing"] > 0),
        ],
    )

    await txn.step()
    with pytest.raises(KeyError):
        await txn.step()

    assert txn.state is TransactionState.FAILED
    assert txn.outcome.kind is OutcomeKind.ERROR
    assert pool.leased == 0


async def test_pool_exhausted_propagates(pool, fake_pool):
    fake_pool.size = 0
    txn = ScriptedTransaction(pool, [Execute("SELECT 1")])

    with pytest.raises(PoolExhausted):
        await txn.step()

    assert txn.state is TransactionState.NOT_STARTED


async def test_context_manager_rolls_back_abandoned(pool, database):
    txn = ScriptedTransaction(
        pool, [Execute("SELECT 1"), Checkpoint("wait"), Execute("SELECT 2")]
    )

    async with txn:
        await txn.step()
        await txn.step()

    assert txn.state is TransactionState.ROLLED_BACK
    assert database.statements()[-1] == "ROLLBACK"
    assert pool.leased == 0


async def test_external_failure(pool, database):
    txn = ScriptedTransaction(pool, [Execute("SELECT 1"), Checkpoint("wait")])
    await txn.step()

    await txn.fail(SerializationFailure("gave up", sql_state="40001"))

    assert txn.outcome.kind is OutcomeKind.SERIALIZATION_FAILURE
    assert txn.outcome.failed_step == 0
    assert pool.leased == 0

    await txn.fail(RuntimeError("ignored once terminal"))
    assert isinstance(txn.error, SerializationFailure)


async def test_each_transaction_uses_its_own_lease(pool):
    t1 = ScriptedTransaction(pool, [Execute("SELECT 1"), Checkpoint("a")])
    t2 = ScriptedTransaction(pool, [Execute("SELECT 2"), Checkpoint("b")])

    await t1.step()
    await t2.step()

    assert t1.lease.connection is not t2.lease.connection
    assert t1.lease.owner == t1.name
