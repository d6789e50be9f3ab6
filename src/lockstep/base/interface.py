from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import namedtuple
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlparse

from lockstep.exception import InvalidState, LockstepError
from lockstep.lease import ConnectionLease

logger = logging.getLogger(__name__)

UrlMapping = namedtuple("UrlMapping", ("key", "cast"))


URLPARSE_MAPPING = {
    "hostname": UrlMapping("_host", str),
    "username": UrlMapping("_user", str),
    "password": UrlMapping("_password", str),
    "port": UrlMapping("_port", int),
    "path": UrlMapping("_db", lambda value: value.replace("/", "")),
    "query": UrlMapping("_query", str),
}


class BaseInterface(ABC):
    """Connection pool capability handed to every scripted transaction.

    Concrete interfaces implement `checkout`/`checkin` against a real pool.
    The base class layers exclusive leases on top: a connection that is
    currently leased is never handed out a second time, and every lease is
    returned exactly once.
    """

    scheme = "dummy"

    @abstractmethod
    def _setup_pool(self): ...

    @abstractmethod
    async def open(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    async def checkout(self, timeout: Optional[float] = None) -> Any: ...

    @abstractmethod
    async def checkin(self, connection: Any) -> None: ...

    @abstractmethod
    async def prepare(self, connection: Any) -> None: ...

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        db: Optional[str] = None,
        query: Optional[str] = None,
        min_size: int = 1,
        max_size: Optional[int] = None,
        acquire_timeout: Optional[float] = None,
        statement_timeout: Optional[float] = None,
    ) -> None:
        """DB class initialization.

        Args:
            dsn (str, optional): DB data source name
            host (str, optional): DB address URL or IP
            port (int, optional): DB port. Defaults to 5432 for postgres
            user (str, optional): DB user
            password (str, optional): DB password
            db (str, optional): DB name
            query (str, optional): DB query parameters. Defaults to None
            min_size (int, optional): Minimum number of connections in pool.
                Defaults to 1
            max_size (int, optional): Maximum number of connections in pool.
                Defaults to None
            acquire_timeout (float, optional): Seconds to wait for a free
                connection before raising `PoolExhausted`. Defaults to None
            statement_timeout (float, optional): Ceiling in seconds applied
                to every statement run on a leased connection.
                Defaults to None
        """

        if dsn and host:
            raise LockstepError("Cannot connect to DB using host and dsn")

        if not dsn:
            if port and (
                not isinstance(port, int) or port not in range(0, 65536)
            ):
                raise LockstepError(
                    "port: must be an integer between 0 and 65535"
                )

            if host is not None and (
                not isinstance(host, str) or not len(host) > 0
            ):
                raise LockstepError(
                    "host: must be a string at least 1 character long"
                )

        if password is not None and (
            not isinstance(password, str) or not len(password) > 0
        ):
            raise LockstepError(
                "password: must be a string at least 1 character long"
            )

        if max_size is not None and max_size < min_size:
            raise LockstepError("max_size: must not be less than min_size")

        for label, value in (
            ("acquire_timeout", acquire_timeout),
            ("statement_timeout", statement_timeout),
        ):
            if value is not None and value <= 0:
                raise LockstepError(f"{label}: must be a positive number")

        self._dsn = dsn
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._db = db
        self._query = query
        self._min_size = min_size
        self._max_size = max_size
        self._acquire_timeout = acquire_timeout
        self._statement_timeout = statement_timeout
        self._full_dsn: Optional[str] = None
        self._leases: Dict[int, ConnectionLease] = {}

        self._populate_connection_args()
        self._populate_dsn()
        self._setup_pool()

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.dsn}>"

    def _populate_connection_args(self):
        dsn = self.dsn or ""
        parts = urlparse(dsn) if dsn else None
        defaults = {
            "port": 5432 if self.scheme.startswith("postgres") else None,
            "hostname": "localhost",
            "username": None,
            "password": None,
            "path": "/",
            "query": "",
        }
        for key, mapping in URLPARSE_MAPPING.items():
            if not getattr(self, mapping.key):
                value = getattr(parts, key, None) if parts else None
                if value is None:
                    value = defaults.get(key)
                if value is not None:
                    setattr(self, mapping.key, mapping.cast(value))

    def _populate_dsn(self):
        if self.password:
            auth = f"{self.user}:...@"
            full_auth = f"{self.user}:{self.password}@"
        elif self.user:
            auth = full_auth = f"{self.user}@"
        else:
            auth = full_auth = ""
        self._dsn = f"{self.scheme}://{auth}{self.host}:{self.port}/{self.db}"
        self._full_dsn = (
            f"{self.scheme}://{full_auth}{self.host}:{self.port}/{self.db}"
        )
        self._full_dsn += f"?{self._query}" if self._query else ""

    @property
    def dsn(self):
        return self._dsn

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    @property
    def user(self):
        return self._user

    @property
    def password(self):
        return self._password

    @property
    def db(self):
        return self._db

    @property
    def full_dsn(self):
        return self._full_dsn

    @property
    def min_size(self):
        return self._min_size

    @property
    def max_size(self):
        return self._max_size

    @property
    def acquire_timeout(self) -> Optional[float]:
        return self._acquire_timeout

    @property
    def statement_timeout(self) -> Optional[float]:
        return self._statement_timeout

    @property
    def leased(self) -> int:
        """Number of leases currently checked out"""
        return len(self._leases)

    async def acquire(self, owner: str = "") -> ConnectionLease:
        """Check out one exclusive connection

        Args:
            owner (str, optional): Name of the holder, used in log output.

        Raises:
            PoolExhausted: No connection became available within
                `acquire_timeout`.

        Returns:
            ConnectionLease: A lease that must be released exactly once
        """
        connection = await self.checkout(timeout=self.acquire_timeout)
        key = id(connection)
        if key in self._leases:
            raise InvalidState(
                f"Connection handed out to {owner or 'a transaction'} is "
                f"already leased to {self._leases[key].owner}"
            )
        lease = ConnectionLease(self, connection, owner=owner)
        self._leases[key] = lease
        try:
            await self.prepare(connection)
        except Exception:
            await lease.release()
            raise
        logger.debug("Leased %s to %s", lease, owner or "<anonymous>")
        return lease

    async def release(self, lease: ConnectionLease) -> None:
        """Return a lease to the pool. Releasing twice is a no-op."""
        await lease.release()

    async def _return(self, lease: ConnectionLease) -> None:
        self._leases.pop(id(lease.raw_connection), None)
        await self.checkin(lease.raw_connection)
        logger.debug("Returned %s from %s", lease, lease.owner)

    @asynccontextmanager
    async def lease(self, owner: str = "") -> AsyncIterator[ConnectionLease]:
        """Lease a connection for the duration of the block"""
        lease = await self.acquire(owner=owner)
        try:
            yield lease
        finally:
            await lease.release()
