from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from psycopg.pq import TransactionStatus

from lockstep.exception import InvalidState

if TYPE_CHECKING:
    from lockstep.base.interface import BaseInterface

logger = logging.getLogger(__name__)

OPEN_TRANSACTION = (TransactionStatus.INTRANS, TransactionStatus.INERROR)


class ConnectionLease:
    """One physical connection, held exclusively by one owner.

    A lease is returned to its pool exactly once. Returning a lease whose
    connection is still inside a transaction rolls that transaction back
    first, so an abandoned script never leaks row locks into the pool.
    """

    def __init__(
        self, pool: BaseInterface, connection: Any, owner: str = ""
    ) -> None:
        self.lease_id = f"lease_{uuid4().hex[:8]}"
        self.owner = owner
        self._pool = pool
        self._connection = connection
        self._released = False

    def __str__(self) -> str:
        status = "released" if self._released else "held"
        return f"<ConnectionLease {self.lease_id} ({status})>"

    @property
    def connection(self) -> Any:
        if self._released:
            raise InvalidState(
                f"{self} was already returned to the pool by {self.owner}"
            )
        return self._connection

    @property
    def raw_connection(self) -> Any:
        return self._connection

    @property
    def is_released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True

        try:
            status = self._connection.info.transaction_status
            if status in OPEN_TRANSACTION:
                logger.debug(
                    "Rolling back open transaction on %s before release",
                    self,
                )
                await self._connection.execute("ROLLBACK")
        except Exception as e:
            logger.warning(
                "Could not roll back %s held by %s: %s", self, self.owner, e
            )
        finally:
            await self._pool._return(self)
