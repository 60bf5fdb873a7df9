"""Parallel execution of TOC entries and run reports."""

from mpp_backup.executor.report import (
    ALREADY_COMPLETED,
    EntryOutcome,
    EntryStatus,
    Report,
)
from mpp_backup.executor.runner import EntryHandler, HandlerResult, ParallelExecutor

__all__ = [
    "ALREADY_COMPLETED",
    "EntryHandler",
    "EntryOutcome",
    "EntryStatus",
    "HandlerResult",
    "ParallelExecutor",
    "Report",
]
