from __future__ import annotations

from typing import Any

from psycopg import AsyncConnection
from psycopg.rows import dict_row

from ..executor import RowSet, StatementExecutor


class PostgresExecutor(StatementExecutor):
    """Executor for running statements on a Postgres connection"""

    async def _run_sql(
        self, connection: AsyncConnection, query: str, values: Any
    ) -> RowSet:
        cursor = await connection.execute(query, values)
        if cursor.description is None:
            return RowSet(
                rowcount=cursor.rowcount, status=cursor.statusmessage
            )
        cursor.row_factory = dict_row
        raw = await cursor.fetchall()
        return RowSet(
            raw, rowcount=cursor.rowcount, status=cursor.statusmessage
        )
