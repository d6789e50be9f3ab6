from __future__ import annotations

import logging
from typing import Dict, List, Union

from lockstep.exception import InvalidState
from lockstep.transaction import (
    ScriptedTransaction,
    StepRecord,
    TransactionOutcome,
)

logger = logging.getLogger(__name__)

TransactionRef = Union[ScriptedTransaction, str]


class BaseScheduler:
    """Owns a set of scripted transactions and their leases.

    Leaving the scheduler's `async with` block releases every lease,
    whatever state the transactions ended up in.
    """

    discipline = "base"

    def __init__(self, *transactions: ScriptedTransaction) -> None:
        self._transactions: Dict[str, ScriptedTransaction] = {}
        self.trace: List[StepRecord] = []
        self.register(*transactions)

    def register(self, *transactions: ScriptedTransaction) -> None:
        for transaction in transactions:
            existing = self._transactions.get(transaction.name)
            if existing is transaction:
                continue
            if existing is not None:
                raise InvalidState(
                    f"A transaction named {transaction.name} is already "
                    f"registered with this {self.discipline} scheduler"
                )
            self._transactions[transaction.name] = transaction
            logger.debug(
                "Registered %s with %s scheduler",
                transaction.name,
                self.discipline,
            )

    @property
    def transactions(self) -> List[ScriptedTransaction]:
        return list(self._transactions.values())

    @property
    def settled(self) -> bool:
        return all(txn.is_terminal for txn in self._transactions.values())

    def get(self, transaction: TransactionRef) -> ScriptedTransaction:
        name = (
            transaction
            if isinstance(transaction, str)
            else transaction.name
        )
        try:
            found = self._transactions[name]
        except KeyError:
            raise InvalidState(
                f"Transaction {name} is not registered with this "
                f"{self.discipline} scheduler"
            )
        if not isinstance(transaction, str) and found is not transaction:
            raise InvalidState(
                f"Another transaction is registered under the name {name}"
            )
        return found

    def outcomes(self) -> Dict[str, TransactionOutcome]:
        return {
            name: transaction.outcome
            for name, transaction in self._transactions.items()
        }

    async def open(self) -> None:
        """Lease a connection for every registered transaction, in order"""
        for transaction in self._transactions.values():
            if not transaction.is_terminal:
                await transaction.open()

    async def close(self) -> None:
        for transaction in self._transactions.values():
            await transaction.close()
        logger.debug("%s scheduler closed", self.discipline)

    async def __aenter__(self):
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
