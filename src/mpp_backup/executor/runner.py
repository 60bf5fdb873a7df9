"""Phase-ordered parallel execution of TOC entries.

``ParallelExecutor`` runs entries against a pool of worker connections:

- Phases run in order (predata, data, postdata, statistics) with a hard
  barrier: no entry of a phase starts before every entry of the previous
  phase has finished.
- Within a phase, an entry starts only after its same-phase dependencies
  finished.  An entry whose dependency failed or was skipped is skipped.
- Predata entries of one schema run one at a time; each phase is bounded
  by its job count and by the number of idle workers.
- A failing entry is recorded and the run continues.  In strict mode the
  first data-phase failure cancels the run: in-flight entries finish,
  nothing new is dispatched, and ``RunAborted`` carries the partial report.
- With ``handle_interrupts`` a first Ctrl-C cancels the run the same way;
  a second one interrupts immediately.

Usage:
    async def handler(entry, worker):
        async with worker.transaction():
            await worker.execute(entry.statement)

    executor = ParallelExecutor(workers, handler, strict=True)
    report = await executor.run(toc.entries)
"""

import asyncio
import contextlib
import logging
import signal
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from mpp_backup.adapters.base import WorkerConnection
from mpp_backup.catalog.models import Phase
from mpp_backup.errors import BackupError, RunAborted
from mpp_backup.executor.report import (
    ALREADY_COMPLETED,
    EntryOutcome,
    EntryStatus,
    Report,
)
from mpp_backup.toc.models import TOCEntry

logger = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    """Optional details a handler reports for a succeeded entry."""

    rows: int | None = None
    warnings: list[str] = field(default_factory=list)


EntryHandler = Callable[[TOCEntry, WorkerConnection], Awaitable[HandlerResult | None]]


def _failure_reason(error: Exception) -> str:
    if isinstance(error, BackupError):
        return str(error)
    return f"{type(error).__name__}: {error}"


class ParallelExecutor:
    """Runs TOC entries on a fixed pool of worker connections.

    Args:
        workers: Open worker connections.  Each runs one entry at a time.
        handler: Coroutine applied to ``(entry, worker)``.
        strict: Abort the run on the first failed data entry; a partially
            written relation is unusable.
        predata_jobs: Concurrency of the predata phase.
        data_jobs: Concurrency of the data and statistics phases
            (default: one per worker).
        postdata_jobs: Concurrency of the postdata phase
            (default: one per worker).
        operation: Label stored in the report.
        handle_interrupts: Turn SIGINT into ``cancel("interrupted")`` while
            ``run()`` is active.
    """

    def __init__(
        self,
        workers: Sequence[WorkerConnection],
        handler: EntryHandler,
        strict: bool = False,
        predata_jobs: int = 1,
        data_jobs: int | None = None,
        postdata_jobs: int | None = None,
        operation: Literal["backup", "restore"] = "restore",
        handle_interrupts: bool = False,
    ) -> None:
        if not workers:
            raise ValueError("At least one worker is required")
        self._workers = list(workers)
        self._handler = handler
        self.strict = strict
        self._jobs = {
            Phase.PREDATA: max(1, predata_jobs),
            Phase.DATA: max(1, data_jobs or len(self._workers)),
            Phase.POSTDATA: max(1, postdata_jobs or len(self._workers)),
            Phase.STATISTICS: max(1, data_jobs or len(self._workers)),
        }
        self.operation = operation
        self.handle_interrupts = handle_interrupts
        self._cancel_reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def cancel(self, reason: str) -> None:
        """Stop dispatching new entries.  In-flight entries finish."""
        if self._cancel_reason is None:
            logger.warning("Cancelling run: %s", reason)
            self._cancel_reason = reason

    async def run(self, entries: Iterable[TOCEntry], skip: Iterable[int] = ()) -> Report:
        """Execute ``entries`` and return the report.

        Args:
            entries: Entries to run, in any order; they execute by phase and
                dependency, ties in ordinal order.
            skip: Ordinals that completed in an earlier run.  They are
                reported as skipped ("already completed") and count as done
                for their dependents.

        Raises:
            RunAborted: The run was cancelled (strict mode, ``cancel()`` or an
                interrupt).  The exception carries the partial report.
        """
        entries = sorted(entries, key=lambda e: e.ordinal)
        skip_set = set(skip)
        report = Report(operation=self.operation, started_at=datetime.now(timezone.utc))
        outcomes: dict[int, EntryOutcome] = {}

        idle: asyncio.Queue[WorkerConnection] = asyncio.Queue()
        for worker in self._workers:
            idle.put_nowait(worker)

        with self._cancel_on_interrupt():
            for phase in Phase:
                phase_entries = [e for e in entries if e.phase == phase]
                if not phase_entries:
                    continue
                if self.cancelled:
                    for entry in phase_entries:
                        outcomes[entry.ordinal] = self._skipped(entry, self._cancelled_reason())
                    continue

                logger.info(
                    "Starting %s phase: %d entries, %d jobs",
                    phase.value,
                    len(phase_entries),
                    min(self._jobs[phase], len(self._workers)),
                )
                started = time.monotonic()
                await self._run_phase(phase, phase_entries, outcomes, skip_set, idle)
                logger.info(
                    "Finished %s phase in %.1fs", phase.value, time.monotonic() - started
                )

        report.outcomes = [outcomes[e.ordinal] for e in entries]
        report.finished_at = datetime.now(timezone.utc)

        if self._cancel_reason is not None:
            report.aborted_reason = self._cancel_reason
            raise RunAborted(self._cancel_reason, report)

        logger.info("Run finished: %s", report.counts())
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancelled_reason(self) -> str:
        return f"run cancelled: {self._cancel_reason}"

    @contextlib.contextmanager
    def _cancel_on_interrupt(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed = False
        if self.handle_interrupts:
            try:
                loop.add_signal_handler(signal.SIGINT, self._on_interrupt, loop)
                installed = True
            except (NotImplementedError, RuntimeError) as e:
                # No loop signal support (Windows) or not the main thread.
                logger.debug("SIGINT handler not installed: %s", e)
        try:
            yield
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    def _on_interrupt(self, loop: asyncio.AbstractEventLoop) -> None:
        logger.warning("Interrupted; waiting for running entries (Ctrl-C again to stop now)")
        self.cancel("interrupted")
        # Restores the default handler, so the next SIGINT raises KeyboardInterrupt.
        loop.remove_signal_handler(signal.SIGINT)

    @staticmethod
    def _skipped(entry: TOCEntry, reason: str) -> EntryOutcome:
        return EntryOutcome(
            ordinal=entry.ordinal,
            phase=entry.phase,
            object_kind=entry.object_kind,
            name=entry.qualified_name,
            status=EntryStatus.SKIPPED,
            reason=reason,
        )

    @staticmethod
    def _blocking_dependency(
        entry: TOCEntry, outcomes: dict[int, EntryOutcome]
    ) -> EntryOutcome | None:
        for dep in entry.depends_on:
            outcome = outcomes.get(dep)
            if outcome is None or outcome.status == EntryStatus.SUCCEEDED:
                continue
            if outcome.status == EntryStatus.SKIPPED and outcome.reason == ALREADY_COMPLETED:
                continue
            return outcome
        return None

    async def _run_phase(
        self,
        phase: Phase,
        phase_entries: list[TOCEntry],
        outcomes: dict[int, EntryOutcome],
        skip: set[int],
        idle: "asyncio.Queue[WorkerConnection]",
    ) -> None:
        done = {entry.ordinal: asyncio.Event() for entry in phase_entries}
        slots = asyncio.Semaphore(self._jobs[phase])
        schema_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        async def run_entry(entry: TOCEntry) -> None:
            try:
                for dep in entry.depends_on:
                    if dep in done:
                        await done[dep].wait()

                if entry.ordinal in skip:
                    outcomes[entry.ordinal] = self._skipped(entry, ALREADY_COMPLETED)
                    return
                if self.cancelled:
                    outcomes[entry.ordinal] = self._skipped(entry, self._cancelled_reason())
                    return
                blocker = self._blocking_dependency(entry, outcomes)
                if blocker is not None:
                    outcomes[entry.ordinal] = self._skipped(
                        entry,
                        f"dependency [{blocker.ordinal}] {blocker.name} {blocker.status.value}",
                    )
                    return

                serial = (
                    schema_locks[entry.schema_name]
                    if phase == Phase.PREDATA
                    else contextlib.nullcontext()
                )
                async with slots, serial:
                    if self.cancelled:
                        outcomes[entry.ordinal] = self._skipped(entry, self._cancelled_reason())
                        return
                    worker = await idle.get()
                    try:
                        outcomes[entry.ordinal] = await self._execute(entry, worker)
                    finally:
                        idle.put_nowait(worker)
            finally:
                done[entry.ordinal].set()

        await asyncio.gather(*(run_entry(entry) for entry in phase_entries))

    async def _execute(self, entry: TOCEntry, worker: WorkerConnection) -> EntryOutcome:
        started = time.monotonic()
        logger.debug("Worker %d running %s", worker.worker_id, entry.label)
        try:
            result = await self._handler(entry, worker)
        except Exception as e:
            reason = _failure_reason(e)
            logger.warning("Entry %d (%s) failed: %s", entry.ordinal, entry.label, reason)
            if self.strict and entry.phase == Phase.DATA:
                self.cancel(f"{entry.label} failed: {reason}")
            return EntryOutcome(
                ordinal=entry.ordinal,
                phase=entry.phase,
                object_kind=entry.object_kind,
                name=entry.qualified_name,
                status=EntryStatus.FAILED,
                reason=reason,
                worker_id=worker.worker_id,
                duration=time.monotonic() - started,
            )

        result = result or HandlerResult()
        return EntryOutcome(
            ordinal=entry.ordinal,
            phase=entry.phase,
            object_kind=entry.object_kind,
            name=entry.qualified_name,
            status=EntryStatus.SUCCEEDED,
            warnings=list(result.warnings),
            rows=result.rows,
            worker_id=worker.worker_id,
            duration=time.monotonic() - started,
        )
