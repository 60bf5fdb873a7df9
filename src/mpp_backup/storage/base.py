"""Backup storage protocol.

A backup is a set of named artifacts under one backup id: the manifest,
the statistics record, the run report, and one append-only data artifact
per worker.  Table data is addressed by ``ByteRange`` so a restore can
read a single relation without scanning the rest.

Data is streamed in both directions: a writer appends one relation's
chunks as COPY produces them, a reader hands a range back in bounded
chunks.

Methods are sync; async callers run data I/O through ``asyncio.to_thread``.
"""

from contextlib import AbstractContextManager
from typing import Protocol

from mpp_backup.toc.models import ByteRange

MANIFEST_NAME = "toc.json"
STATISTICS_NAME = "statistics.json"
REPORT_NAME = "report.json"
RESTORE_REPORT_NAME = "restore_report.json"


def data_artifact_name(worker_id: int) -> str:
    return f"data_{worker_id}.csv"


class DataWriter(Protocol):
    """Appends one relation's data to an artifact."""

    def write(self, chunk: bytes) -> None:
        ...

    @property
    def byte_range(self) -> ByteRange:
        """Where everything written so far landed."""
        ...


class DataReader(Protocol):
    """Reads one ``ByteRange`` back, never past its end."""

    def read(self, size: int = -1) -> bytes:
        """Up to ``size`` bytes of the range; ``b""`` once it is exhausted.

        Raises:
            ValueError: The artifact ends before the range does.
        """
        ...

    def close(self) -> None:
        ...


class Storage(Protocol):
    """Storage backend for one backup."""

    backup_id: str

    def open_data_writer(self, artifact: str) -> AbstractContextManager[DataWriter]:
        """Append to ``artifact`` until the context exits.

        If the block raises, the partial append is discarded.  One writer
        per artifact at a time.
        """
        ...

    def open_data_reader(self, byte_range: ByteRange) -> DataReader:
        """Open a range written by a writer, possibly by an earlier backup.

        Raises:
            FileNotFoundError: The artifact does not exist.
            ValueError: The artifact is shorter than the range.
        """
        ...

    def write_data(self, artifact: str, data: bytes) -> ByteRange:
        """Append ``data`` to ``artifact`` and return where it landed."""
        ...

    def read_data(self, byte_range: ByteRange) -> bytes:
        """Read a whole range into memory."""
        ...

    def artifact_size(self, artifact: str, backup_id: str | None = None) -> int | None:
        """Size in bytes of a data artifact, or ``None`` if it does not exist."""
        ...

    def write_text(self, name: str, content: str) -> None:
        ...

    def read_text(self, name: str) -> str:
        """Raises ``FileNotFoundError`` when ``name`` was never written."""
        ...

    def exists(self, name: str) -> bool:
        ...
