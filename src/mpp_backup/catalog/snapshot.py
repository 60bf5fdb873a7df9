"""Consistent-view acquisition for backups and per-entry locks for restores.

A backup coordinator session locks every table in ``ACCESS SHARE``
mode, exports its snapshot, and keeps the transaction open for the whole
run.  Worker sessions import the exported snapshot id so that every
relation is read as of the same instant, and the locks keep concurrent
DDL from changing what was captured.

Uses psycopg (v3) for the coordinator connection.

Usage:
    async with SnapshotManager(database_url, lock_wait_timeout=30) as manager:
        handle = await manager.acquire_consistent_view(relations)
        workers = [await adapter.open_worker(i, handle.snapshot_id) for i in range(4)]
        ...
    # locks released here
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import psycopg
from psycopg import AsyncConnection, IsolationLevel
from psycopg.rows import dict_row
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import DBAPIError

from mpp_backup.adapters.base import DatabaseClient
from mpp_backup.adapters.postgres import normalize_url
from mpp_backup.catalog.models import ObjectKind, Phase, Relation, RelationKind
from mpp_backup.errors import LockConflict, LockTimeout, SnapshotError
from mpp_backup.statistics.versions import EngineVersion
from mpp_backup.toc.models import TOCEntry

logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"

DEFAULT_LOCK_WAIT_TIMEOUT = 30.0

_CONFLICTING_LOCKS_SQL = """
    SELECT l.relation::bigint AS oid, l.pid, l.mode
    FROM pg_locks l
    WHERE l.locktype = 'relation'
      AND l.granted
      AND l.mode = 'AccessExclusiveLock'
      AND l.pid <> pg_backend_pid()
      AND l.relation::bigint = ANY(%(oids)s::bigint[])
    ORDER BY l.relation, l.pid
"""


def _timeout_ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


class SnapshotHandle(BaseModel):
    """Opaque token naming an exported snapshot.

    Shared read-only by every worker of one backup run.
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    acquired_at: datetime
    locked_relations: tuple[int, ...] = ()


class SnapshotManager:
    """Owns the coordinator session of a backup run.

    Args:
        database_url: PostgreSQL connection URL (any ``postgresql+driver``
            scheme is accepted and normalized for psycopg).
        lock_wait_timeout: Seconds to wait for each lock before giving up.
        connection: Pre-opened connection to use instead of connecting.
    """

    def __init__(
        self,
        database_url: str | None = None,
        lock_wait_timeout: float = DEFAULT_LOCK_WAIT_TIMEOUT,
        connection: AsyncConnection | None = None,
    ) -> None:
        if database_url is None and connection is None:
            raise ValueError("Either database_url or connection is required")
        self._database_url = normalize_url(database_url, driver=None) if database_url else None
        self.lock_wait_timeout = lock_wait_timeout
        self._conn = connection
        self._handle: SnapshotHandle | None = None

    async def __aenter__(self) -> "SnapshotManager":
        if self._conn is None:
            self._conn = await psycopg.AsyncConnection.connect(
                self._database_url, connect_timeout=10
            )
        await self._conn.set_isolation_level(IsolationLevel.REPEATABLE_READ)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.rollback()
        finally:
            await self._conn.close()
            self._conn = None
            if self._handle is not None:
                logger.debug("Released snapshot %s", self._handle.snapshot_id)

    @property
    def connection(self) -> AsyncConnection:
        """The coordinator connection; reads on it see the exported snapshot."""
        if self._conn is None:
            raise RuntimeError("Snapshot manager not connected. Use async with.")
        return self._conn

    @property
    def handle(self) -> SnapshotHandle | None:
        return self._handle

    async def _query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        async with self.connection.cursor(row_factory=dict_row) as cur:
            await cur.execute(sql, params)
            return await cur.fetchall()

    async def acquire_consistent_view(
        self,
        relations: Iterable[Relation],
        version: EngineVersion | None = None,
    ) -> SnapshotHandle:
        """Lock ``relations`` and export a snapshot shared by all workers.

        Only tables (and views, where ``version`` can lock them) are locked;
        sequences and materialized views are read under the snapshot alone.
        Locks are held until the manager exits.  Nothing is retried: the
        caller decides whether to try again.

        Raises:
            LockConflict: Another backend holds an exclusive lock on one of
                the relations.
            LockTimeout: A lock could not be granted within
                ``lock_wait_timeout``.
            SnapshotError: A view was already acquired on this manager, or
                a relation could not be locked.
        """
        if self._handle is not None:
            raise SnapshotError("A consistent view was already acquired on this session")

        relations = list(relations)
        by_oid = {r.oid: r for r in relations}
        lockable = _lockable_kinds(version)
        to_lock = [r for r in relations if r.kind in lockable]

        if by_oid:
            conflicts = await self._query(_CONFLICTING_LOCKS_SQL, {"oids": list(by_oid)})
            if conflicts:
                row = conflicts[0]
                relation = by_oid.get(row["oid"])
                raise LockConflict(
                    relation.fqn if relation else str(row["oid"]),
                    row["pid"],
                    row["mode"],
                )

        # Start a fresh transaction so the snapshot is taken after the locks.
        await self.connection.rollback()
        async with self.connection.cursor() as cur:
            await cur.execute(
                f"SET LOCAL lock_timeout = '{_timeout_ms(self.lock_wait_timeout)}ms'"
            )
            for relation in to_lock:
                try:
                    await cur.execute(f"LOCK TABLE {relation.fqn} IN ACCESS SHARE MODE")
                except psycopg.errors.LockNotAvailable as e:
                    raise LockTimeout(relation.fqn, self.lock_wait_timeout) from e
                except psycopg.Error as e:
                    raise SnapshotError(f"Cannot lock {relation.fqn}: {e}") from e

        rows = await self._query("SELECT pg_export_snapshot() AS snapshot_id")
        self._handle = SnapshotHandle(
            snapshot_id=rows[0]["snapshot_id"],
            acquired_at=datetime.now(timezone.utc),
            locked_relations=tuple(r.oid for r in to_lock),
        )
        logger.info(
            "Exported snapshot %s after locking %d of %d relations",
            self._handle.snapshot_id,
            len(to_lock),
            len(relations),
        )
        return self._handle


def _lockable_kinds(version: EngineVersion | None) -> frozenset[RelationKind]:
    kinds = {RelationKind.TABLE, RelationKind.PARTITIONED_TABLE}
    if version is not None and version.can_lock_views:
        kinds.add(RelationKind.VIEW)
    return frozenset(kinds)


def _is_lock_timeout(error: DBAPIError) -> bool:
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == LOCK_NOT_AVAILABLE


class RestoreLockManager:
    """Takes the per-entry locks of a restore.

    Data and statistics entries lock their relation ``EXCLUSIVE``; postdata
    entries attached to an existing relation lock it ``ACCESS EXCLUSIVE``.
    Locks live in the entry's transaction and are released at its end.
    """

    def __init__(self, lock_wait_timeout: float = DEFAULT_LOCK_WAIT_TIMEOUT) -> None:
        self.lock_wait_timeout = lock_wait_timeout

    @staticmethod
    def mode_for(entry: TOCEntry) -> str | None:
        if entry.relation is None:
            return None
        if entry.phase in (Phase.DATA, Phase.STATISTICS):
            return "EXCLUSIVE"
        if entry.phase == Phase.POSTDATA and entry.object_kind != ObjectKind.MATERIALIZED_VIEW:
            if entry.relation != (entry.schema_name, entry.name):
                return "ACCESS EXCLUSIVE"
        return None

    async def lock_for_entry(self, client: DatabaseClient, entry: TOCEntry) -> str | None:
        """Lock the entry's relation inside the current transaction.

        Returns:
            The lock mode taken, or ``None`` when the entry needs no lock.

        Raises:
            LockTimeout: The lock was not granted within the bounded wait.
        """
        mode = self.mode_for(entry)
        if mode is None:
            return None
        await client.execute(
            f"SET LOCAL lock_timeout = '{_timeout_ms(self.lock_wait_timeout)}ms'"
        )
        try:
            await client.execute(f"LOCK TABLE {entry.relation_fqn} IN {mode} MODE")
        except DBAPIError as e:
            if _is_lock_timeout(e):
                raise LockTimeout(entry.relation_fqn, self.lock_wait_timeout) from e
            raise
        return mode
