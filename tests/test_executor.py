"""Tests for ParallelExecutor and the run report."""

import asyncio
import signal
import sys

import pytest

from mpp_backup.catalog.models import ObjectKind, Phase
from mpp_backup.errors import EntryExecutionFailure, RunAborted
from mpp_backup.executor.report import ALREADY_COMPLETED, EntryOutcome, EntryStatus, Report
from mpp_backup.executor.runner import HandlerResult, ParallelExecutor
from mpp_backup.toc.models import TOCEntry

_KIND_BY_PHASE = {
    Phase.PREDATA: ObjectKind.TABLE,
    Phase.DATA: ObjectKind.TABLE_DATA,
    Phase.POSTDATA: ObjectKind.INDEX,
    Phase.STATISTICS: ObjectKind.STATISTICS,
}


def _entry(ordinal: int, phase: Phase, name: str, depends_on=(), schema: str = "public") -> TOCEntry:
    return TOCEntry(
        ordinal=ordinal,
        phase=phase,
        object_kind=_KIND_BY_PHASE[phase],
        oid=1000 + ordinal,
        schema_name=schema,
        name=name,
        depends_on=list(depends_on),
    )


class _Recorder:
    """Handler that logs start/end events and can fail chosen ordinals."""

    def __init__(self, fail: set[int] | None = None, delay: float = 0.01) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.events: list[tuple[str, int]] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, entry, worker):
        self.events.append(("start", entry.ordinal))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
            if entry.ordinal in self.fail:
                raise EntryExecutionFailure(entry.object_kind.value, "boom")
            return HandlerResult(rows=entry.ordinal)
        finally:
            self.running -= 1
            self.events.append(("end", entry.ordinal))

    def started(self) -> list[int]:
        return [ordinal for event, ordinal in self.events if event == "start"]


@pytest.fixture
def workers(make_worker):
    return [make_worker(i) for i in range(4)]


# ------------------------------------------------------------------
# Scheduling
# ------------------------------------------------------------------


class TestScheduling:
    async def test_all_entries_succeed(self, workers):
        handler = _Recorder()
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.DATA, "a", [1]),
            _entry(3, Phase.POSTDATA, "a_idx", [1, 2]),
        ]
        report = await ParallelExecutor(workers, handler).run(entries)
        assert report.status == "success"
        assert [o.status for o in report.outcomes] == [EntryStatus.SUCCEEDED] * 3
        assert report.outcome(2).rows == 2

    async def test_phase_barrier(self, workers):
        """No data entry starts before every predata entry has ended."""
        handler = _Recorder()
        entries = [
            _entry(1, Phase.PREDATA, "a", schema="s1"),
            _entry(2, Phase.PREDATA, "b", schema="s2"),
            _entry(3, Phase.PREDATA, "c", schema="s3"),
            _entry(4, Phase.DATA, "x"),
            _entry(5, Phase.DATA, "y"),
        ]
        await ParallelExecutor(workers, handler, predata_jobs=3).run(entries)

        positions = {event: i for i, event in enumerate(handler.events)}
        last_predata_end = max(positions[("end", n)] for n in (1, 2, 3))
        first_data_start = min(positions[("start", n)] for n in (4, 5))
        assert last_predata_end < first_data_start

    async def test_same_phase_dependency_waits(self, workers):
        handler = _Recorder()
        entries = [
            _entry(1, Phase.POSTDATA, "pk"),
            _entry(2, Phase.POSTDATA, "fk", [1]),
        ]
        await ParallelExecutor(workers, handler).run(entries)
        assert handler.events.index(("end", 1)) < handler.events.index(("start", 2))

    async def test_data_jobs_bound_concurrency(self, workers):
        handler = _Recorder(delay=0.02)
        entries = [_entry(n, Phase.DATA, f"t{n}") for n in range(1, 9)]
        await ParallelExecutor(workers, handler, data_jobs=2).run(entries)
        assert handler.max_running == 2

    async def test_concurrency_bounded_by_workers(self, make_worker):
        handler = _Recorder(delay=0.02)
        entries = [_entry(n, Phase.DATA, f"t{n}") for n in range(1, 7)]
        await ParallelExecutor([make_worker(0), make_worker(1)], handler, data_jobs=8).run(entries)
        assert handler.max_running <= 2

    async def test_predata_serialized_per_schema(self, workers):
        handler = _Recorder(delay=0.02)
        entries = [_entry(n, Phase.PREDATA, f"t{n}", schema="sales") for n in range(1, 5)]
        await ParallelExecutor(workers, handler, predata_jobs=4).run(entries)
        assert handler.max_running == 1

    async def test_outcomes_in_ordinal_order(self, workers):
        handler = _Recorder()
        entries = [_entry(3, Phase.DATA, "c"), _entry(1, Phase.PREDATA, "a"), _entry(2, Phase.DATA, "b")]
        report = await ParallelExecutor(workers, handler).run(entries)
        assert [o.ordinal for o in report.outcomes] == [1, 2, 3]

    def test_requires_workers(self):
        with pytest.raises(ValueError):
            ParallelExecutor([], _Recorder())


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


class TestFailures:
    async def test_dependent_of_failed_entry_is_skipped(self, workers):
        handler = _Recorder(fail={1})
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.PREDATA, "b"),
            _entry(3, Phase.DATA, "a", [1]),
            _entry(4, Phase.DATA, "b", [2]),
        ]
        report = await ParallelExecutor(workers, handler).run(entries)

        assert report.outcome(1).status == EntryStatus.FAILED
        assert report.outcome(1).reason == "table: boom"
        skipped = report.outcome(3)
        assert skipped.status == EntryStatus.SKIPPED
        assert skipped.reason == "dependency [1] public.a failed"
        assert report.outcome(4).status == EntryStatus.SUCCEEDED
        assert 3 not in handler.started()
        assert report.status == "partial"

    async def test_skip_propagates(self, workers):
        handler = _Recorder(fail={1})
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.DATA, "a", [1]),
            _entry(3, Phase.POSTDATA, "a_idx", [2]),
        ]
        report = await ParallelExecutor(workers, handler).run(entries)
        assert report.outcome(3).status == EntryStatus.SKIPPED
        assert report.outcome(3).reason == "dependency [2] public.a skipped"

    async def test_unexpected_exception_recorded(self, workers):
        async def handler(entry, worker):
            raise RuntimeError("connection reset")

        report = await ParallelExecutor(workers, handler).run([_entry(1, Phase.DATA, "a")])
        assert report.outcome(1).reason == "RuntimeError: connection reset"

    async def test_strict_mode_aborts_on_data_failure(self, make_worker):
        handler = _Recorder(fail={2})
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.DATA, "a"),
            _entry(3, Phase.DATA, "b"),
            _entry(4, Phase.POSTDATA, "c"),
        ]
        executor = ParallelExecutor([make_worker(0)], handler, strict=True)
        with pytest.raises(RunAborted) as exc_info:
            await executor.run(entries)

        report = exc_info.value.report
        assert report.status == "aborted"
        assert "table_data public.a failed" in report.aborted_reason
        assert report.outcome(1).status == EntryStatus.SUCCEEDED
        assert report.outcome(2).status == EntryStatus.FAILED
        for ordinal in (3, 4):
            assert report.outcome(ordinal).status == EntryStatus.SKIPPED
            assert report.outcome(ordinal).reason.startswith("run cancelled: ")
        assert handler.started() == [1, 2]

    async def test_strict_mode_continues_past_ddl_failure(self, workers):
        handler = _Recorder(fail={1})
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.DATA, "b"),
            _entry(3, Phase.POSTDATA, "c"),
        ]
        report = await ParallelExecutor(workers, handler, strict=True).run(entries)
        assert report.status == "partial"
        assert report.outcome(1).status == EntryStatus.FAILED
        assert report.outcome(2).status == EntryStatus.SUCCEEDED
        assert report.outcome(3).status == EntryStatus.SUCCEEDED

    async def test_strict_mode_lets_in_flight_entries_finish(self, workers):
        class _Slow(_Recorder):
            async def __call__(self, entry, worker):
                if entry.ordinal == 2:
                    self.delay = 0.05
                else:
                    self.delay = 0.0
                return await super().__call__(entry, worker)

        handler = _Slow(fail={1})
        entries = [_entry(1, Phase.DATA, "a"), _entry(2, Phase.DATA, "b")]
        with pytest.raises(RunAborted) as exc_info:
            await ParallelExecutor(workers, handler, strict=True).run(entries)
        assert exc_info.value.report.outcome(2).status == EntryStatus.SUCCEEDED

    async def test_cancel(self, make_worker):
        executor = None

        async def handler(entry, worker):
            executor.cancel("operator request")

        executor = ParallelExecutor([make_worker(0)], handler)
        entries = [_entry(n, Phase.DATA, f"t{n}") for n in range(1, 4)]
        with pytest.raises(RunAborted, match="operator request"):
            await executor.run(entries)
        assert executor.cancelled

    @pytest.mark.skipif(sys.platform == "win32", reason="no loop signal handlers")
    async def test_interrupt_cancels_run(self, make_worker):
        async def handler(entry, worker):
            if entry.ordinal == 1:
                signal.raise_signal(signal.SIGINT)
                await asyncio.sleep(0.05)
            return HandlerResult(rows=1)

        executor = ParallelExecutor([make_worker(0)], handler, handle_interrupts=True)
        entries = [
            _entry(1, Phase.DATA, "a"),
            _entry(2, Phase.DATA, "b"),
            _entry(3, Phase.POSTDATA, "c"),
        ]
        with pytest.raises(RunAborted) as exc_info:
            await executor.run(entries)

        report = exc_info.value.report
        assert exc_info.value.reason == "interrupted"
        assert report.status == "aborted"
        assert report.outcome(1).status == EntryStatus.SUCCEEDED
        for ordinal in (2, 3):
            assert report.outcome(ordinal).status == EntryStatus.SKIPPED
            assert report.outcome(ordinal).reason == "run cancelled: interrupted"

    @pytest.mark.skipif(sys.platform == "win32", reason="no loop signal handlers")
    async def test_interrupt_handler_removed_after_run(self, make_worker):
        async def handler(entry, worker):
            return None

        executor = ParallelExecutor([make_worker(0)], handler, handle_interrupts=True)
        await executor.run([_entry(1, Phase.DATA, "a")])
        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler


# ------------------------------------------------------------------
# Resume
# ------------------------------------------------------------------


class TestResume:
    async def test_completed_entries_skipped(self, workers):
        handler = _Recorder()
        entries = [_entry(1, Phase.PREDATA, "a"), _entry(2, Phase.DATA, "a", [1])]
        report = await ParallelExecutor(workers, handler).run(entries, skip={1})

        assert handler.started() == [2]
        assert report.outcome(1).status == EntryStatus.SKIPPED
        assert report.outcome(1).reason == ALREADY_COMPLETED
        assert report.outcome(2).status == EntryStatus.SUCCEEDED
        assert report.status == "success"

    async def test_resume_from_report(self, workers):
        first = _Recorder(fail={2})
        entries = [
            _entry(1, Phase.PREDATA, "a"),
            _entry(2, Phase.DATA, "a", [1]),
            _entry(3, Phase.POSTDATA, "a_idx", [2]),
        ]
        report = await ParallelExecutor(workers, first).run(entries)
        assert report.completed_ordinals() == {1}

        second = _Recorder()
        resumed = await ParallelExecutor(workers, second).run(
            entries, skip=Report.from_json(report.to_json()).completed_ordinals()
        )
        assert second.started() == [2, 3]
        assert resumed.status == "success"


# ------------------------------------------------------------------
# Report
# ------------------------------------------------------------------


class TestReport:
    def _outcome(self, ordinal: int, status: EntryStatus, reason: str | None = None) -> EntryOutcome:
        return EntryOutcome(
            ordinal=ordinal, phase=Phase.DATA, object_kind=ObjectKind.TABLE_DATA,
            name=f"public.t{ordinal}", status=status, reason=reason,
        )

    def test_counts(self):
        report = Report(
            outcomes=[
                self._outcome(1, EntryStatus.SUCCEEDED),
                self._outcome(2, EntryStatus.FAILED, "boom"),
                self._outcome(3, EntryStatus.SKIPPED, "dependency [2] public.t2 failed"),
            ]
        )
        assert report.counts() == {"succeeded": 1, "skipped": 1, "failed": 1}
        assert [o.ordinal for o in report.failures()] == [2]

    def test_already_completed_is_success(self):
        report = Report(outcomes=[self._outcome(1, EntryStatus.SKIPPED, ALREADY_COMPLETED)])
        assert report.status == "success"

    def test_format_report(self):
        report = Report(
            operation="backup",
            outcomes=[
                self._outcome(1, EntryStatus.SUCCEEDED),
                self._outcome(2, EntryStatus.FAILED, "boom"),
            ],
        )
        text = report.format_report()
        assert text.splitlines()[0] == "backup partial: 1 succeeded, 1 failed, 0 skipped"
        assert "[2] table_data public.t2: failed (boom)" in text

    def test_json_round_trip(self):
        report = Report(
            backup_id="20260118093000",
            outcomes=[self._outcome(1, EntryStatus.SUCCEEDED)],
            aborted_reason="stop",
        )
        assert Report.from_json(report.to_json()) == report
