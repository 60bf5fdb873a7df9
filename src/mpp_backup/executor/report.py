"""Per-entry outcomes and the run report.

Every entry handed to the executor ends up with exactly one outcome:
succeeded, failed, or skipped (with a reason).  Entries are never dropped
silently, even when the run is aborted.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from mpp_backup.catalog.models import ObjectKind, Phase

ALREADY_COMPLETED = "already completed"


class EntryStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class EntryOutcome(BaseModel):
    """Result of executing one TOC entry."""

    ordinal: int
    phase: Phase
    object_kind: ObjectKind
    name: str
    status: EntryStatus
    reason: str | None = None
    warnings: list[str] = Field(default_factory=list)
    rows: int | None = None
    worker_id: int | None = None
    duration: float = 0.0


class Report(BaseModel):
    """Outcome of a backup or restore run.

    ``status`` is ``aborted`` when the run stopped early, ``partial`` when
    any entry failed or was skipped for a reason other than having
    completed in an earlier run, and ``success`` otherwise.
    """

    operation: Literal["backup", "restore"] = "restore"
    backup_id: str | None = None
    outcomes: list[EntryOutcome] = Field(default_factory=list)
    aborted_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def status(self) -> Literal["success", "partial", "aborted"]:
        if self.aborted_reason is not None:
            return "aborted"
        for outcome in self.outcomes:
            if outcome.status == EntryStatus.FAILED:
                return "partial"
            if outcome.status == EntryStatus.SKIPPED and outcome.reason != ALREADY_COMPLETED:
                return "partial"
        return "success"

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in EntryStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    def failures(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.status == EntryStatus.FAILED]

    def warnings(self) -> list[str]:
        return [w for o in self.outcomes for w in o.warnings]

    def outcome(self, ordinal: int) -> EntryOutcome | None:
        return next((o for o in self.outcomes if o.ordinal == ordinal), None)

    def completed_ordinals(self) -> set[int]:
        """Ordinals a resumed run may skip."""
        return {
            o.ordinal
            for o in self.outcomes
            if o.status == EntryStatus.SUCCEEDED
            or (o.status == EntryStatus.SKIPPED and o.reason == ALREADY_COMPLETED)
        }

    def format_report(self) -> str:
        """Plain-text summary: one line per failed or skipped entry."""
        counts = self.counts()
        lines = [
            f"{self.operation} {self.status}: "
            f"{counts['succeeded']} succeeded, {counts['failed']} failed, "
            f"{counts['skipped']} skipped"
        ]
        if self.aborted_reason:
            lines.append(f"Aborted: {self.aborted_reason}")
        for outcome in self.outcomes:
            if outcome.status == EntryStatus.SUCCEEDED:
                continue
            lines.append(
                f"  [{outcome.ordinal}] {outcome.object_kind.value} {outcome.name}: "
                f"{outcome.status.value} ({outcome.reason})"
            )
        warnings = self.warnings()
        if warnings:
            lines.append(f"{len(warnings)} warnings")
        return "\n".join(lines)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2) + "\n"

    @classmethod
    def from_json(cls, text: str) -> "Report":
        return cls.model_validate_json(text)
