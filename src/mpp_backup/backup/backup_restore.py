"""Parallel backup and restore driven by a table of contents.

Backup: capture the catalog under a consistent snapshot, order it into a
TOC, dump table data with parallel workers that share the snapshot, and
persist manifest, statistics and run report.

Restore: replay a (possibly filtered) TOC phase by phase -- predata DDL,
data load, postdata DDL, statistics install -- each entry in its own
transaction under restore locks.

Usage:
    from mpp_backup.backup.backup_restore import (
        backup_database,
        restore_database,
        validate_backup,
    )

    # Backup
    async with SnapshotManager(url) as manager:
        result = await backup_database(manager, adapter, LocalDirectoryStorage("backups"))

    # Restore
    storage = LocalDirectoryStorage("backups", result.backup_id)
    report = await restore_database(target_adapter, storage, jobs=8)

    # Validate (sync -- local reads only)
    summary = validate_backup(storage)
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from mpp_backup.adapters.base import WorkerConnection
from mpp_backup.adapters.postgres import AsyncPostgresAdapter
from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.introspector import CatalogIntrospector
from mpp_backup.catalog.models import ObjectKind, Phase
from mpp_backup.catalog.snapshot import (
    DEFAULT_LOCK_WAIT_TIMEOUT,
    RestoreLockManager,
    SnapshotHandle,
    SnapshotManager,
)
from mpp_backup.errors import EntryExecutionFailure, InvalidManifest, RunAborted
from mpp_backup.executor.report import Report
from mpp_backup.executor.runner import HandlerResult, ParallelExecutor
from mpp_backup.statistics.codec import StatisticsRecord, install_relation_statistics
from mpp_backup.statistics.versions import EngineFeatures
from mpp_backup.storage.base import (
    MANIFEST_NAME,
    REPORT_NAME,
    RESTORE_REPORT_NAME,
    STATISTICS_NAME,
    DataReader,
    Storage,
    data_artifact_name,
)
from mpp_backup.toc.models import ByteRange, TOCEntry
from mpp_backup.toc.resolver import resolve_order
from mpp_backup.toc.toc import TableOfContents

logger = logging.getLogger(__name__)

REQUIRED_METADATA = ("backup_id", "created_at", "engine_version", "snapshot_id")

# Bytes handed to COPY FROM per read of a data range.
COPY_CHUNK_SIZE = 1 << 20


@dataclass
class BackupResult:
    """What a backup run produced."""

    backup_id: str
    toc: TableOfContents
    report: Report
    snapshot: SnapshotHandle
    statistics: StatisticsRecord | None = None


async def _open_workers(
    adapter: AsyncPostgresAdapter,
    count: int,
    snapshot_id: str | None = None,
) -> list[WorkerConnection]:
    workers: list[WorkerConnection] = []
    try:
        for worker_id in range(count):
            workers.append(await adapter.open_worker(worker_id, snapshot_id))
    except Exception:
        await _close_workers(workers)
        raise
    return workers


async def _close_workers(workers: Iterable[WorkerConnection]) -> None:
    for worker in workers:
        try:
            await worker.close()
        except Exception as e:
            logger.warning("Failed to close worker %d: %s", worker.worker_id, e)


async def _read_chunks(reader: DataReader) -> AsyncIterator[bytes]:
    while True:
        chunk = await asyncio.to_thread(reader.read, COPY_CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


def _filter_metadata(filters: FilterSpec | None) -> dict[str, list[str]]:
    if filters is None:
        return {}
    return {name: sorted(values) for name, values in filters.model_dump().items() if values}


def _reusable_ranges(
    toc: TableOfContents,
    previous_toc: TableOfContents | None,
) -> dict[int, ByteRange]:
    """Data ranges of an earlier backup that are still current.

    A table qualifies when it reports a modification count and the count
    is unchanged since the earlier backup.
    """
    if previous_toc is None:
        return {}
    previous_id = previous_toc.metadata.get("backup_id")
    previous = {
        e.relation: e
        for e in previous_toc
        if e.object_kind == ObjectKind.TABLE_DATA and e.data_range is not None
    }
    reusable: dict[int, ByteRange] = {}
    for entry in toc:
        if entry.object_kind != ObjectKind.TABLE_DATA or entry.modification_count is None:
            continue
        old = previous.get(entry.relation)
        if old is None or old.modification_count != entry.modification_count:
            continue
        byte_range = old.data_range
        if byte_range.backup_id is None:
            byte_range = byte_range.model_copy(update={"backup_id": previous_id})
        reusable[entry.ordinal] = byte_range
    return reusable


async def backup_database(
    snapshot_manager: SnapshotManager,
    adapter: AsyncPostgresAdapter,
    storage: Storage,
    filters: FilterSpec | None = None,
    jobs: int = 4,
    with_stats: bool = True,
    strict: bool = False,
    metadata: dict | None = None,
    previous_toc: TableOfContents | None = None,
    introspector: CatalogIntrospector | None = None,
    handle_interrupts: bool = False,
) -> BackupResult:
    """Back up metadata, data and statistics under one consistent snapshot.

    Args:
        snapshot_manager: Entered ``SnapshotManager``; its connection is the
            coordinator session.
        adapter: Adapter used to open the data workers.
        storage: Destination of the backup.
        filters: Schema/relation filter; ``None`` backs up everything.
        jobs: Number of parallel data workers.
        with_stats: Capture planner statistics.
        strict: Abort on the first failed data entry.
        metadata: Extra metadata stored in the manifest.
        previous_toc: Manifest of an earlier backup; unchanged
            append-optimized tables reuse its data (incremental backup).
        introspector: Override the catalog reader (defaults to one bound to
            the snapshot connection).
        handle_interrupts: Let Ctrl-C stop dispatching new tables; the
            partial report is persisted before ``RunAborted`` propagates.

    Returns:
        ``BackupResult`` with the manifest and the run report.

    Raises:
        SnapshotError: The consistent view could not be established.
        RunAborted: Strict mode or an interrupt stopped the run; the report
            is persisted.

    Example:
        async with SnapshotManager(url, lock_wait_timeout=60) as manager:
            result = await backup_database(
                manager,
                adapter,
                LocalDirectoryStorage("backups"),
                filters=FilterSpec(include_schemas={"sales"}),
                jobs=8,
            )
    """
    introspector = introspector or CatalogIntrospector(snapshot_manager.connection)
    version = await introspector.get_engine_version()
    features = EngineFeatures.for_version(version)
    logger.info("Backing up %s as %s", version, storage.backup_id)

    relations = await introspector.load_relations(filters)
    handle = await snapshot_manager.acquire_consistent_view(relations, version)
    objects = await introspector.load_objects(relations, filters)
    tables = [r for r in relations if r.has_data]

    statistics: StatisticsRecord | None = None
    statistics_relations = []
    if with_stats:
        tuple_stats = await introspector.load_tuple_statistics(relations)
        attribute_stats = await introspector.load_attribute_statistics(relations, features)
        statistics = StatisticsRecord(
            features=features,
            tuples=list(tuple_stats.values()),
            attributes=[stat for stats in attribute_stats.values() for stat in stats],
        )
        captured = statistics.relation_oids()
        statistics_relations = [r for r in relations if r.oid in captured]

    backup_metadata: dict[str, Any] = {
        "backup_id": storage.backup_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "engine_version": str(version),
        "snapshot_id": handle.snapshot_id,
        "with_stats": with_stats,
        "filters": _filter_metadata(filters),
    }
    if previous_toc is not None:
        backup_metadata["incremental_from"] = previous_toc.metadata.get("backup_id")
    if metadata:
        backup_metadata.update(metadata)

    toc = TableOfContents.build(
        resolve_order(objects, tables, statistics_relations), metadata=backup_metadata
    )
    reusable = _reusable_ranges(toc, previous_toc)
    data_entries = toc.lookup(phases=[Phase.DATA])
    logger.info(
        "TOC has %d entries; dumping %d tables (%d reused)",
        len(toc),
        len(data_entries) - len(reusable),
        len(reusable),
    )

    async def dump(entry: TOCEntry, worker: WorkerConnection) -> HandlerResult:
        if entry.ordinal in reusable:
            toc.record_data_offset(entry.ordinal, reusable[entry.ordinal])
            logger.debug("Reusing data of %s", entry.label)
            return HandlerResult()
        with storage.open_data_writer(data_artifact_name(worker.worker_id)) as writer:

            async def sink(chunk: bytes) -> None:
                await asyncio.to_thread(writer.write, chunk)

            async with worker.transaction():
                rows = await worker.copy_out(*entry.relation, sink)
        toc.record_data_offset(entry.ordinal, writer.byte_range)
        return HandlerResult(rows=rows)

    workers = await _open_workers(adapter, max(1, jobs), handle.snapshot_id)
    try:
        executor = ParallelExecutor(
            workers,
            dump,
            strict=strict,
            data_jobs=jobs,
            operation="backup",
            handle_interrupts=handle_interrupts,
        )
        try:
            report = await executor.run(data_entries)
        except RunAborted as e:
            if e.report is not None:
                e.report.backup_id = storage.backup_id
                storage.write_text(REPORT_NAME, e.report.to_json())
            raise
    finally:
        await _close_workers(workers)

    report.backup_id = storage.backup_id
    storage.write_text(MANIFEST_NAME, toc.serialize())
    if statistics is not None:
        storage.write_text(STATISTICS_NAME, statistics.to_json())
    storage.write_text(REPORT_NAME, report.to_json())

    logger.info("Backup %s %s", storage.backup_id, report.status)
    return BackupResult(
        backup_id=storage.backup_id,
        toc=toc,
        report=report,
        snapshot=handle,
        statistics=statistics,
    )


def load_toc(storage: Storage) -> TableOfContents:
    """Read the manifest of a backup."""
    return TableOfContents.deserialize(storage.read_text(MANIFEST_NAME))


async def restore_database(
    adapter: AsyncPostgresAdapter,
    storage: Storage,
    filters: FilterSpec | None = None,
    jobs: int = 4,
    postdata_jobs: int | None = None,
    with_stats: bool = True,
    strict: bool = False,
    existing: Iterable[str] = (),
    resume_report: Report | None = None,
    target_features: EngineFeatures | None = None,
    lock_wait_timeout: float = DEFAULT_LOCK_WAIT_TIMEOUT,
    clean: bool = False,
    predata_jobs: int = 1,
    handle_interrupts: bool = False,
) -> Report:
    """Replay a backup into the target database.

    Args:
        adapter: Adapter connected to the target database.
        storage: Storage holding the backup.
        filters: Restore only matching schemas/relations.
        jobs: Number of parallel workers.
        postdata_jobs: Concurrency of the postdata phase (default ``jobs``).
        with_stats: Install captured planner statistics.
        strict: Abort on the first failed data entry.
        existing: Names (``schema`` or ``schema.name``) already present in
            the target; filtered entries may depend on them.
        resume_report: Report of an interrupted restore; entries it records
            as completed are skipped.
        target_features: Statistics feature set of the target (detected
            from the server version when omitted).
        lock_wait_timeout: Seconds to wait for each restore lock.
        clean: Drop predata objects and truncate tables before loading.
        predata_jobs: Concurrency of the predata phase.
        handle_interrupts: Let Ctrl-C stop dispatching new entries; the
            partial report is persisted for ``--resume``.

    Returns:
        The run ``Report``; also persisted as ``restore_report.json``.

    Raises:
        InvalidManifest: The manifest is out of dependency order.
        FilterDependencyError: The filter strands a dependency.
        RunAborted: Strict mode or an interrupt stopped the run.
    """
    toc = load_toc(storage)
    errors = toc.validate(require_data=False)
    if errors:
        raise InvalidManifest(errors)
    phases = [p for p in Phase if with_stats or p != Phase.STATISTICS]
    entries = toc.lookup(filters, phases=phases, existing=existing)

    statistics: StatisticsRecord | None = None
    if with_stats and any(e.phase == Phase.STATISTICS for e in entries):
        if storage.exists(STATISTICS_NAME):
            statistics = StatisticsRecord.from_json(storage.read_text(STATISTICS_NAME))
        if target_features is None:
            target_features = EngineFeatures.for_version(await adapter.get_engine_version())
        if statistics is not None:
            logger.info(
                "Installing statistics captured under %s into %s (%d slots)",
                statistics.features.label,
                target_features.label,
                target_features.slot_count,
            )

    skip = resume_report.completed_ordinals() if resume_report is not None else set()
    locks = RestoreLockManager(lock_wait_timeout)
    logger.info(
        "Restoring %d of %d entries from %s (%d already completed)",
        len(entries),
        len(toc),
        storage.backup_id,
        len(skip & {e.ordinal for e in entries}),
    )

    async def apply(entry: TOCEntry, worker: WorkerConnection) -> HandlerResult | None:
        async with worker.transaction():
            await locks.lock_for_entry(worker, entry)

            if entry.phase in (Phase.PREDATA, Phase.POSTDATA):
                if clean and entry.phase == Phase.PREDATA and entry.drop_statement:
                    await worker.execute_script(entry.drop_statement)
                await worker.execute_script(entry.statement)
                return None

            if entry.object_kind == ObjectKind.TABLE_DATA:
                if entry.data_range is None:
                    raise EntryExecutionFailure(entry.object_kind.value, "no data captured")
                reader = await asyncio.to_thread(storage.open_data_reader, entry.data_range)
                try:
                    if clean:
                        await worker.execute_script(entry.drop_statement)
                    rows = await worker.copy_in(*entry.relation, _read_chunks(reader))
                finally:
                    reader.close()
                return HandlerResult(rows=rows)

            if statistics is None:
                raise EntryExecutionFailure(entry.object_kind.value, "statistics file missing")
            tuple_stat, attribute_stats = statistics.for_relation(entry.oid)
            result = await install_relation_statistics(
                worker, tuple_stat, attribute_stats, target_features
            )
            return HandlerResult(warnings=result.warnings)

    workers = await _open_workers(adapter, max(1, jobs))
    try:
        executor = ParallelExecutor(
            workers,
            apply,
            strict=strict,
            predata_jobs=predata_jobs,
            data_jobs=jobs,
            postdata_jobs=postdata_jobs or jobs,
            operation="restore",
            handle_interrupts=handle_interrupts,
        )
        try:
            report = await executor.run(entries, skip=skip)
        except RunAborted as e:
            if e.report is not None:
                e.report.backup_id = storage.backup_id
                storage.write_text(RESTORE_REPORT_NAME, e.report.to_json())
            raise
    finally:
        await _close_workers(workers)

    report.backup_id = storage.backup_id
    storage.write_text(RESTORE_REPORT_NAME, report.to_json())
    logger.info("Restore of %s %s", storage.backup_id, report.status)
    return report


def validate_backup(storage: Storage) -> dict:
    """Validate a backup's manifest, data locations and statistics.

    This function is **sync** -- it only reads from storage with no
    database I/O.

    Returns:
        Dict with ``valid`` (bool), ``errors`` (list[str]),
        and ``warnings`` (list[str]).

    Example:
        summary = validate_backup(LocalDirectoryStorage("backups", "20260118093000"))
        if summary["errors"]:
            raise ValueError("Backup is invalid")
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        toc = load_toc(storage)
    except FileNotFoundError:
        errors.append(f"Manifest not found for backup {storage.backup_id}")
        return {"valid": False, "errors": errors, "warnings": warnings}
    except ValueError as e:
        errors.append(str(e))
        return {"valid": False, "errors": errors, "warnings": warnings}

    for key in REQUIRED_METADATA:
        if key not in toc.metadata:
            warnings.append(f"Missing metadata field: {key}")

    errors.extend(toc.validate(require_data=False))

    for entry in toc:
        if entry.object_kind != ObjectKind.TABLE_DATA:
            continue
        if entry.data_range is None:
            errors.append(f"{entry.label} has no data location")
            continue
        size = storage.artifact_size(entry.data_range.artifact, entry.data_range.backup_id)
        if size is None:
            errors.append(
                f"{entry.label}: artifact {entry.data_range.artifact} missing"
                + (f" in backup {entry.data_range.backup_id}" if entry.data_range.backup_id else "")
            )
        elif size < entry.data_range.end:
            errors.append(
                f"{entry.label}: artifact {entry.data_range.artifact} is {size} bytes, "
                f"range ends at {entry.data_range.end}"
            )

    if any(e.phase == Phase.STATISTICS for e in toc):
        if not storage.exists(STATISTICS_NAME):
            errors.append("Statistics entries present but statistics file missing")
        else:
            try:
                StatisticsRecord.from_json(storage.read_text(STATISTICS_NAME))
            except ValueError as e:
                errors.append(str(e))

    if storage.exists(REPORT_NAME):
        try:
            report = Report.from_json(storage.read_text(REPORT_NAME))
        except ValueError as e:
            warnings.append(f"Unreadable run report: {e}")
        else:
            if report.status != "success":
                warnings.append(f"Backup run finished as {report.status}")
    else:
        warnings.append("Run report missing")

    valid = len(errors) == 0
    return {"valid": valid, "errors": errors, "warnings": warnings}
