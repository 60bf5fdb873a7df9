"""Shared fakes for catalog, snapshot, executor and backup tests.

``FakeConnection`` mimics the psycopg ``AsyncConnection`` surface used by
``SnapshotManager`` and ``CatalogIntrospector``: queries are answered by
the first route whose needle occurs in the SQL.  ``FakeWorker`` and
``FakeAdapter`` stand in for ``PostgresWorker``/``AsyncPostgresAdapter``
over an in-memory table store.
"""

from contextlib import asynccontextmanager
from typing import Any

import pytest

from mpp_backup.statistics.versions import EngineVersion

GP7_VERSION = (
    "PostgreSQL 12.12 (Greenplum Database 7.1.0 build commit:4a5b6c) "
    "on x86_64-pc-linux-gnu, compiled by gcc"
)
SNAPSHOT_ID = "00000003-0000001B-1"
TABLE_OID = 16400


# ------------------------------------------------------------------
# psycopg-like coordinator connection
# ------------------------------------------------------------------


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._rows: list[dict] = []

    async def __aenter__(self) -> "FakeCursor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def execute(self, sql: str, params: dict | None = None) -> None:
        self._conn.executed.append((sql, params))
        self._rows = self._conn.answer(sql, params)

    async def fetchall(self) -> list[dict]:
        return list(self._rows)


class FakeConnection:
    """Routes SQL to canned rows.

    A route value may be a list of rows, an exception instance (raised), or
    a callable ``(sql, params) -> rows``.
    """

    def __init__(self, routes: list[tuple[str, Any]] | None = None) -> None:
        self.routes = list(routes or [])
        self.executed: list[tuple[str, dict | None]] = []
        self.events: list[str] = []
        self.closed = False

    def answer(self, sql: str, params: dict | None) -> list[dict]:
        for needle, result in self.routes:
            if needle in sql:
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(sql, params)
                return [dict(row) for row in result]
        return []

    def cursor(self, row_factory: Any = None) -> FakeCursor:
        return FakeCursor(self)

    async def set_isolation_level(self, level: Any) -> None:
        self.events.append(f"isolation:{level.name}")

    async def rollback(self) -> None:
        self.events.append("rollback")
        self.executed.append(("ROLLBACK", None))

    async def close(self) -> None:
        self.events.append("close")
        self.closed = True

    def statements(self, needle: str) -> list[str]:
        return [sql for sql, _ in self.executed if needle in sql]


# ------------------------------------------------------------------
# In-memory workers
# ------------------------------------------------------------------


class FakeDatabase:
    """Tables as lists of CSV lines, plus a log of everything executed."""

    def __init__(self, tables: dict[tuple[str, str], list[str]] | None = None) -> None:
        self.tables: dict[tuple[str, str], list[str]] = {
            key: list(rows) for key, rows in (tables or {}).items()
        }
        self.scripts: list[str] = []
        self.statements: list[tuple[str, dict]] = []


class FakeWorker:
    """Implements the ``WorkerConnection`` protocol over a ``FakeDatabase``."""

    def __init__(
        self,
        worker_id: int,
        database: FakeDatabase,
        snapshot_id: str | None = None,
        fail_on: tuple[str, ...] = (),
    ) -> None:
        self.worker_id = worker_id
        self.database = database
        self.snapshot_id = snapshot_id
        self.fail_on = fail_on
        self.transactions = 0
        self.rollbacks = 0
        self.closed = False

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        try:
            yield self
        except Exception:
            self.rollbacks += 1
            raise

    def _check(self, sql: str) -> None:
        for needle in self.fail_on:
            if needle in sql:
                raise RuntimeError(f"simulated failure on {needle}")

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        self._check(sql)
        self.database.statements.append((sql, params or {}))
        return []

    async def execute(self, sql: str, params: dict | None = None) -> None:
        self._check(sql)
        self.database.statements.append((sql, params or {}))

    async def execute_script(self, sql: str) -> None:
        self._check(sql)
        self.database.scripts.append(sql)

    async def copy_out(self, schema_name: str, name: str, sink) -> int:
        self._check(f"{schema_name}.{name}")
        rows = self.database.tables[(schema_name, name)]
        for row in rows:
            await sink((row + "\n").encode())
        return len(rows)

    async def copy_in(self, schema_name: str, name: str, source) -> int:
        data = b"".join([chunk async for chunk in source])
        lines = [line for line in data.decode().splitlines() if line]
        self.database.tables.setdefault((schema_name, name), []).extend(lines)
        return len(lines)

    async def close(self) -> None:
        self.closed = True


class FakeAdapter:
    """Stands in for ``AsyncPostgresAdapter``; workers share one database."""

    def __init__(
        self,
        database: FakeDatabase,
        version: str = GP7_VERSION,
        fail_on: tuple[str, ...] = (),
    ) -> None:
        self.database = database
        self.version = version
        self.fail_on = fail_on
        self.workers: list[FakeWorker] = []
        self.closed = False

    async def open_worker(self, worker_id: int, snapshot_id: str | None = None) -> FakeWorker:
        worker = FakeWorker(worker_id, self.database, snapshot_id, self.fail_on)
        self.workers.append(worker)
        return worker

    async def get_engine_version(self) -> EngineVersion:
        return EngineVersion.parse(self.version)

    async def close(self) -> None:
        self.closed = True


# ------------------------------------------------------------------
# Catalog rows for a single 3-column table
# ------------------------------------------------------------------


def stat_row(
    att_number: int,
    att_name: str,
    slots: list[tuple[int, list[str] | None, list[str] | None]],
    type_name: str = "int4",
    distinct: float = -1.0,
    relation_oid: int = TABLE_OID,
    table: str = "measurements",
) -> dict:
    """Flat ``pg_statistic`` row as returned by the statistics query."""
    row: dict[str, Any] = {
        "relation_oid": relation_oid,
        "schema_name": "public",
        "table": table,
        "att_name": att_name,
        "att_number": att_number,
        "type_name": type_name,
        "type_schema": "pg_catalog",
        "inherit": False,
        "null_fraction": 0.0,
        "width": 4,
        "distinct": distinct,
    }
    for n in range(1, 6):
        kind, numbers, values = slots[n - 1] if n <= len(slots) else (0, None, None)
        row[f"kind{n}"] = kind
        row[f"operator{n}"] = 97 if kind else 0
        row[f"collation{n}"] = 0
        row[f"numbers{n}"] = numbers
        row[f"values{n}"] = values
    return row


def single_table_routes(with_stats: bool = True) -> list[tuple[str, Any]]:
    columns = ["a", "b", "c"]
    histogram = [str(v) for v in range(0, 100, 10)]
    stats = [
        stat_row(i, name, [(2, None, histogram), (3, ["0.93"], None)])
        for i, name in enumerate(columns, start=1)
    ]
    return [
        ("SELECT version()", [{"version": GP7_VERSION}]),
        ("FROM pg_locks", []),
        ("pg_export_snapshot", [{"snapshot_id": SNAPSHOT_ID}]),
        ("FROM pg_appendonly", []),
        (
            "c.relkind IN",
            [{"oid": TABLE_OID, "schema_name": "public", "name": "measurements", "relkind": "r"}],
        ),
        ("SELECT n.nspname FROM pg_namespace", [{"nspname": "public"}]),
        (
            "format_type(a.atttypid",
            [
                {
                    "oid": TABLE_OID,
                    "attname": name,
                    "data_type": "integer",
                    "not_null": False,
                    "default_expr": None,
                }
                for name in columns
            ],
        ),
        (
            "gp_distribution_policy",
            [{"oid": TABLE_OID, "distributed_by": "DISTRIBUTED BY (a)"}],
        ),
        ("FROM pg_statistic s", stats if with_stats else []),
        (
            "c.reltuples",
            [
                {
                    "relation_oid": TABLE_OID,
                    "schema_name": "public",
                    "table": "measurements",
                    "rel_tuples": 100.0,
                    "rel_pages": 1,
                }
            ],
        ),
    ]


def measurement_rows(count: int = 100) -> list[str]:
    return [f"{i},{i * 2},{i % 7}" for i in range(count)]


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def source_connection() -> FakeConnection:
    """Coordinator connection over a catalog with one 3-column table."""
    return FakeConnection(single_table_routes())


@pytest.fixture
def source_database() -> FakeDatabase:
    return FakeDatabase({("public", "measurements"): measurement_rows()})


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def make_worker():
    def _make(worker_id: int = 0, database: FakeDatabase | None = None, **kwargs):
        return FakeWorker(worker_id, database or FakeDatabase(), **kwargs)

    return _make


@pytest.fixture
def make_adapter():
    def _make(database: FakeDatabase | None = None, **kwargs):
        return FakeAdapter(database or FakeDatabase(), **kwargs)

    return _make


@pytest.fixture
def make_database():
    return FakeDatabase


@pytest.fixture
def make_stat_row():
    return stat_row
