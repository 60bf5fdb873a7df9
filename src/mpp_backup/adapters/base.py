"""Database client protocols.

``DatabaseClient`` is the narrow surface the orchestration layer needs from
a database: run a query, run a statement, close.  ``WorkerConnection``
extends it with a dedicated session used by one parallel worker: a
transaction scope per TOC entry and bulk COPY in both directions.

All methods are ``async def`` -- the library is async-first.

Usage:
    from mpp_backup.adapters.base import WorkerConnection

    async def dump(worker: WorkerConnection, out: BinaryIO) -> int:
        async def sink(chunk: bytes) -> None:
            out.write(chunk)

        async with worker.transaction():
            return await worker.copy_out("public", "orders", sink)
"""

from collections.abc import AsyncIterable, Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    SQL uses named parameters (``:name``).
    """

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a query and return its rows.

        Args:
            sql: SQL query with ``:name`` placeholders.
            params: Optional dict of named parameters.

        Returns:
            List of dicts, one per row.  Empty list if no rows.

        Example:
            rows = await client.fetch(
                "SELECT relname FROM pg_class WHERE relnamespace = :ns",
                {"ns": 2200},
            )
        """
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a SQL statement (DDL, DML or catalog writes).

        Args:
            sql: Raw SQL statement to execute.
            params: Optional dict of named parameters for the SQL statement.

        Example:
            await client.execute("CREATE SCHEMA IF NOT EXISTS sales")
        """
        ...

    async def close(self) -> None:
        """Close the connection and clean up resources."""
        ...


class WorkerConnection(DatabaseClient, Protocol):
    """Dedicated session owned by one executor worker.

    A backup worker shares the coordinator's exported snapshot, so every
    relation it reads is seen as of the same instant.  A restore worker
    runs each TOC entry in its own transaction.
    """

    worker_id: int

    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Scope for one TOC entry.

        Commits (or releases the savepoint) on success, rolls back on error.
        """
        ...

    async def execute_script(self, sql: str) -> None:
        """Run one or more statements verbatim, without parameter parsing.

        Used for captured DDL, which may contain colons and several
        statements.
        """
        ...

    async def copy_out(
        self,
        schema_name: str,
        name: str,
        sink: Callable[[bytes], Awaitable[None]],
    ) -> int:
        """Stream a table's rows in CSV format.

        ``sink`` is awaited once per chunk as the server sends it; the table
        is never held in memory whole.

        Returns:
            Number of rows dumped.
        """
        ...

    async def copy_in(
        self, schema_name: str, name: str, source: AsyncIterable[bytes]
    ) -> int:
        """Load CSV rows produced by ``copy_out()``, chunk by chunk.

        Returns:
            Number of rows loaded.
        """
        ...
