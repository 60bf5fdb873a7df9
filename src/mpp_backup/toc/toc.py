"""Table of contents: the frozen, ordered plan of a backup.

A ``TableOfContents`` is built once from resolver output.  Ordinals never
change afterwards: restores select a subsequence with ``lookup()`` and
replay it in ordinal order.  The only mutable state is the data location
of ``table_data`` entries, recorded as each relation's data is written.

The persisted manifest is indented JSON so it can be diffed by hand::

    {
      "format_version": 1,
      "metadata": {"backup_id": "20260118093000", ...},
      "entries": [
        {"ordinal": 1, "phase": "predata", "object_kind": "schema", ...},
        ...
      ]
    }

Usage:
    toc = TableOfContents.build(resolve_order(objects, tables))
    toc.record_data_offset(entry.ordinal, ByteRange(artifact="data_0", offset=0, length=42))
    text = toc.serialize()
    assert TableOfContents.deserialize(text).serialize() == text
"""

import json
import threading
from collections.abc import Iterable, Iterator
from typing import Any

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import ObjectKind, Phase
from mpp_backup.toc.models import ByteRange, TOCEntry
from mpp_backup.toc.resolver import check_order, filter_entries

MANIFEST_FORMAT_VERSION = 1


class TableOfContents:
    """Ordered, indexed manifest of a backup."""

    def __init__(self, entries: Iterable[TOCEntry], metadata: dict[str, Any] | None = None) -> None:
        self._entries: list[TOCEntry] = list(entries)
        self._index: dict[int, int] = {e.ordinal: i for i, e in enumerate(self._entries)}
        self.metadata: dict[str, Any] = dict(metadata or {})
        self._lock = threading.Lock()

        if len(self._index) != len(self._entries):
            raise ValueError("Duplicate ordinals in table of contents")

    @classmethod
    def build(
        cls,
        sorted_entries: Iterable[TOCEntry],
        metadata: dict[str, Any] | None = None,
    ) -> "TableOfContents":
        """Freeze resolver output into a TOC.

        Raises:
            ValueError: If ordinals are not contiguous from 1 or the order
                violates dependency or phase invariants.
        """
        entries = list(sorted_entries)
        expected = list(range(1, len(entries) + 1))
        if [e.ordinal for e in entries] != expected:
            raise ValueError("TOC ordinals must be contiguous and start at 1")
        errors = check_order(entries)
        if errors:
            raise ValueError("Invalid entry order: " + "; ".join(errors))
        return cls(entries, metadata)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def entries(self) -> list[TOCEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TOCEntry]:
        return iter(list(self._entries))

    def get(self, ordinal: int) -> TOCEntry:
        try:
            return self._entries[self._index[ordinal]]
        except KeyError:
            raise KeyError(f"No TOC entry with ordinal {ordinal}") from None

    def find(self, object_kind: ObjectKind, oid: int) -> TOCEntry | None:
        """First entry of ``object_kind`` for ``oid``, if any."""
        for entry in self._entries:
            if entry.object_kind == object_kind and entry.oid == oid:
                return entry
        return None

    def lookup(
        self,
        filter_spec: FilterSpec | None = None,
        phases: Iterable[Phase] | None = None,
        existing: Iterable[str] = (),
    ) -> list[TOCEntry]:
        """Select entries for a restore, in ordinal order.

        Args:
            filter_spec: Schema/relation filter; ``None`` keeps everything.
            phases: Restrict to these phases.
            existing: Unquoted names that already exist in the target and
                may be depended on even when filtered out.

        Raises:
            FilterDependencyError: If the filter strands a dependency.
        """
        selected = filter_entries(self._entries, filter_spec, existing)
        if phases is not None:
            wanted = set(phases)
            selected = [e for e in selected if e.phase in wanted]
        return selected

    def counts_by_phase(self) -> dict[Phase, int]:
        counts = {phase: 0 for phase in Phase}
        for entry in self._entries:
            counts[entry.phase] += 1
        return counts

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record_data_offset(self, ordinal: int, byte_range: ByteRange) -> TOCEntry:
        """Attach the data location of a ``table_data`` entry.

        Safe to call from concurrent workers.

        Raises:
            KeyError: Unknown ordinal.
            ValueError: The entry is not a data entry.
        """
        with self._lock:
            position = self._index.get(ordinal)
            if position is None:
                raise KeyError(f"No TOC entry with ordinal {ordinal}")
            entry = self._entries[position]
            if entry.object_kind != ObjectKind.TABLE_DATA:
                raise ValueError(f"{entry.label} does not hold data")
            updated = entry.model_copy(update={"data_range": byte_range})
            self._entries[position] = updated
            return updated

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, require_data: bool = True) -> list[str]:
        """Report invariant violations (empty list when valid)."""
        errors = check_order(self._entries)
        if require_data:
            for entry in self._entries:
                if entry.object_kind == ObjectKind.TABLE_DATA and entry.data_range is None:
                    errors.append(f"{entry.label} has no data location")
        return errors

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": MANIFEST_FORMAT_VERSION,
            "metadata": self.metadata,
            "entries": [
                e.model_dump(mode="json", by_alias=True) for e in self._entries
            ],
        }

    def serialize(self) -> str:
        with self._lock:
            return json.dumps(self.to_dict(), indent=2) + "\n"

    @classmethod
    def deserialize(cls, text: str) -> "TableOfContents":
        """Load a manifest written by ``serialize()``.

        Raises:
            ValueError: Malformed JSON or unsupported format version.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid manifest JSON: {e}") from e

        version = data.get("format_version")
        if version != MANIFEST_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported manifest version {version!r} "
                f"(expected {MANIFEST_FORMAT_VERSION})"
            )

        entries = [TOCEntry.model_validate(record) for record in data.get("entries", [])]
        return cls(entries, data.get("metadata"))
