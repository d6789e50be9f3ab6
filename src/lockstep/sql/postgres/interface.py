import logging
from typing import Optional

from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from lockstep.base.interface import BaseInterface
from lockstep.exception import PoolExhausted

logger = logging.getLogger(__name__)


def format_timeout(seconds: float) -> str:
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    # Postgres reads 0 as "no timeout"
    return f"{max(1, int(round(seconds * 1000)))}ms"


async def reset_session(connection: AsyncConnection) -> None:
    await connection.execute("RESET ALL")


class PostgresPool(BaseInterface):
    """Interface for leasing connections to a Postgres database"""

    scheme = "postgres"

    def _setup_pool(self):
        self._pool = AsyncConnectionPool(
            self.full_dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"autocommit": True},
            reset=reset_session,
            open=False,
        )

    async def open(self):
        """Open connections to the pool"""
        await self._pool.open()

    async def close(self):
        """Close connections to the pool"""
        await self._pool.close()

    async def checkout(
        self, timeout: Optional[float] = None
    ) -> AsyncConnection:
        """Obtain a connection from the pool

        Args:
            timeout (float, optional): Time before an error is raised on
                failure to obtain a connection. Defaults to `None`, which
                uses the pool's own default.

        Raises:
            PoolExhausted: The pool had no free connection in time.

        Returns:
            AsyncConnection: A database connection in autocommit mode
        """
        try:
            return await self._pool.getconn(timeout=timeout)
        except PoolTimeout as e:
            raise PoolExhausted(
                f"No connection available from {self} within "
                f"{timeout if timeout is not None else 'the pool timeout'} "
                "seconds"
            ) from e

    async def checkin(self, connection: AsyncConnection) -> None:
        await self._pool.putconn(connection)

    async def prepare(self, connection: AsyncConnection) -> None:
        if self.statement_timeout is None:
            return
        timeout = format_timeout(self.statement_timeout)
        await connection.execute(f"SET statement_timeout = '{timeout}'")
        logger.debug("Applied statement_timeout=%s", timeout)
