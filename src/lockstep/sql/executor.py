from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg import Error as DriverError

from lockstep.convert import convert_sql_params
from lockstep.exception import StatementTimeout, classify
from lockstep.lease import ConnectionLease

logger = logging.getLogger(__name__)


class RowSet(List[Dict[str, Any]]):
    """Rows returned by a statement, with the driver's status attached"""

    def __init__(
        self,
        rows: Iterable[Dict[str, Any]] = (),
        rowcount: int = -1,
        status: Optional[str] = None,
    ) -> None:
        super().__init__(rows)
        self.rowcount = rowcount
        self.status = status

    def first(self) -> Optional[Dict[str, Any]]:
        return self[0] if self else None

    def scalar(self) -> Any:
        """First column of the first row, or None on an empty result"""
        row = self.first()
        if row is None:
            return None
        return next(iter(row.values()), None)

    def column(self, name: str) -> List[Any]:
        return [row[name] for row in self]


class StatementExecutor(ABC):
    """Runs raw SQL on a leased connection.

    Driver failures are turned into typed `StatementError` subclasses and
    are never retried: scenarios want to see them.
    """

    POSITIONAL_SUB: str = r"%s"
    KEYWORD_SUB: str = r"%(\2)s"

    def __init__(self, ceiling: Optional[float] = None) -> None:
        self.ceiling = ceiling

    async def execute(
        self,
        lease: ConnectionLease,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        posargs: Optional[Sequence[Any]] = None,
    ) -> RowSet:
        """Execute one statement

        Args:
            lease (ConnectionLease): The lease to run the statement on
            query (str): SQL text, optionally using `$name` or `$1` params
            params (Dict[str, Any], optional): Named parameters
            posargs (Sequence[Any], optional): Positional parameters

        Raises:
            StatementError: The database rejected the statement
            StatementTimeout: The statement ran past its ceiling
            InvalidState: The lease was already released
            LockstepError: A `$name` or `$n` placeholder has no value

        Returns:
            RowSet: The rows produced, empty for statements without a result
        """
        connection = lease.connection
        values: Any = None
        if params is not None or posargs is not None:
            query = convert_sql_params(
                query,
                self.POSITIONAL_SUB,
                self.KEYWORD_SUB,
                params=params,
                posargs=posargs,
            )
            if posargs:
                values = list(posargs)
            elif params:
                values = params

        logger.debug("%s executing: %s", lease.owner or lease, query.strip())
        try:
            if self.ceiling is None:
                return await self._run_sql(connection, query, values)
            return await asyncio.wait_for(
                self._run_sql(connection, query, values), timeout=self.ceiling
            )
        except asyncio.TimeoutError as e:
            raise StatementTimeout(
                f"Statement did not finish within {self.ceiling} seconds",
                query=query,
            ) from e
        except DriverError as e:
            error = classify(e, query=query)
            logger.debug(
                "%s statement failed with %s: %s",
                lease.owner or lease,
                error.kind.value,
                error,
            )
            raise error from e

    @abstractmethod
    async def _run_sql(
        self, connection: Any, query: str, values: Any
    ) -> RowSet: ...
