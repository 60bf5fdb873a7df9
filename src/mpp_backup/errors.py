"""Exception taxonomy for backup and restore runs.

Fatal errors (``SnapshotError``, ``InvalidManifest``, ``DependencyCycle``,
``FilterDependencyError``, ``RunAborted``) end the whole run.  Per-entry
errors (``EntryExecutionFailure``, ``CatalogWriteFailure``) are captured
into the run ``Report``.  ``UnsupportedStatisticKind`` is a warning object:
it is collected, never raised out of statistics install.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mpp_backup.executor.report import Report


class BackupError(Exception):
    """Base class for all backup/restore errors."""

    pass


class SnapshotError(BackupError):
    """Raised when a consistent view cannot be established."""

    pass


class LockTimeout(SnapshotError):
    """A lock could not be acquired within the bounded wait."""

    def __init__(self, relation: str, timeout: float | None = None) -> None:
        self.relation = relation
        self.timeout = timeout
        detail = f" within {timeout:g}s" if timeout is not None else ""
        super().__init__(f"Timed out acquiring lock on {relation}{detail}")


class LockConflict(SnapshotError):
    """Another backend holds a conflicting exclusive lock."""

    def __init__(self, relation: str, holder_pid: int | None = None, mode: str = "") -> None:
        self.relation = relation
        self.holder_pid = holder_pid
        self.mode = mode
        super().__init__(
            f"Relation {relation} is locked in {mode or 'an exclusive mode'} "
            f"by backend {holder_pid}"
        )


class InvalidManifest(BackupError):
    """A manifest fails validation (e.g. hand-edited out of dependency order)."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        shown = "; ".join(errors[:5])
        more = f" (and {len(errors) - 5} more)" if len(errors) > 5 else ""
        super().__init__(f"Invalid manifest: {shown}{more}")


class DependencyCycle(BackupError):
    """Dependency graph could not be ordered.  Internal invariant violation."""

    def __init__(self, entries: list[str]) -> None:
        self.entries = entries
        super().__init__(f"Dependency cycle between: {', '.join(entries)}")


class FilterDependencyError(BackupError):
    """Filtered entries depend on entries that were pruned out."""

    def __init__(self, missing: dict[str, list[str]]) -> None:
        # entry name -> names of pruned dependencies
        self.missing = missing
        details = "; ".join(
            f"{name} needs {', '.join(deps)}" for name, deps in sorted(missing.items())
        )
        super().__init__(f"Filter removes required dependencies: {details}")


class UnsupportedStatisticKind(BackupError):
    """A statistic slot that the target cannot hold.  Non-fatal."""

    def __init__(
        self,
        relation: str,
        attname: str,
        slot: int,
        kind: int,
        reason: str,
    ) -> None:
        self.relation = relation
        self.attname = attname
        self.slot = slot
        self.kind = kind
        self.reason = reason
        super().__init__(
            f"{relation}.{attname} slot {slot} (kind {kind}) skipped: {reason}"
        )


class CatalogWriteFailure(BackupError):
    """Writing statistics into the target catalog failed."""

    def __init__(self, relation: str, attname: str | None, cause: Any) -> None:
        self.relation = relation
        self.attname = attname
        self.cause = cause
        target = f"{relation}.{attname}" if attname else relation
        super().__init__(f"Failed to write statistics for {target}: {cause}")


class EntryExecutionFailure(BackupError):
    """A single TOC entry failed to execute."""

    def __init__(self, object_kind: str, reason: str) -> None:
        self.object_kind = object_kind
        self.reason = reason
        super().__init__(f"{object_kind}: {reason}")


class RunAborted(BackupError):
    """The run stopped early (strict mode or cancellation)."""

    def __init__(self, reason: str, report: "Report | None" = None) -> None:
        self.reason = reason
        self.report = report
        super().__init__(reason)
