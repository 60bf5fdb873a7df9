"""Local directory storage.

Layout::

    <root>/
      20260118093000/
        toc.json
        statistics.json
        report.json
        data_0.csv
        data_1.csv

Usage:
    storage = LocalDirectoryStorage("backups")          # new backup id
    storage = LocalDirectoryStorage("backups", "20260118093000")  # existing
"""

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

from mpp_backup.toc.models import ByteRange

BACKUP_ID_FORMAT = "%Y%m%d%H%M%S"


def new_backup_id() -> str:
    return datetime.now().strftime(BACKUP_ID_FORMAT)


class LocalDataWriter:
    """Appends to an open artifact file; see ``LocalDirectoryStorage.open_data_writer``."""

    def __init__(self, file: BinaryIO, artifact: str, offset: int) -> None:
        self._file = file
        self.artifact = artifact
        self.offset = offset
        self.length = 0

    def write(self, chunk: bytes) -> None:
        self._file.write(chunk)
        self.length += len(chunk)

    @property
    def byte_range(self) -> ByteRange:
        return ByteRange(artifact=self.artifact, offset=self.offset, length=self.length)


class LocalDataReader:
    """Reads one range of an artifact file."""

    def __init__(self, path: Path, byte_range: ByteRange) -> None:
        self.path = path
        self.byte_range = byte_range
        self._file = open(path, "rb")
        self._file.seek(byte_range.offset)
        self._remaining = byte_range.length

    def read(self, size: int = -1) -> bytes:
        if self._remaining == 0:
            return b""
        wanted = self._remaining if size < 0 else min(size, self._remaining)
        chunk = self._file.read(wanted)
        if not chunk:
            raise ValueError(
                f"Truncated data in {self.path}: expected {self.byte_range.length} bytes "
                f"at offset {self.byte_range.offset}, "
                f"got {self.byte_range.length - self._remaining}"
            )
        self._remaining -= len(chunk)
        return chunk

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "LocalDataReader":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class LocalDirectoryStorage:
    """One directory per backup id under a common root.

    Ranges that carry another ``backup_id`` (incremental reuse) are read
    from the sibling directory of that backup.
    """

    def __init__(self, root: str | Path, backup_id: str | None = None) -> None:
        self.root = Path(root)
        self.backup_id = backup_id or new_backup_id()
        self._lock = threading.RLock()
        self._writing: set[str] = set()

    @property
    def directory(self) -> Path:
        return self.root / self.backup_id

    def _path(self, name: str, backup_id: str | None = None) -> Path:
        if "/" in name or name in ("", ".", ".."):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.root / (backup_id or self.backup_id) / name

    @contextmanager
    def open_data_writer(self, artifact: str) -> Iterator[LocalDataWriter]:
        """Append to ``artifact``; the partial append is truncated away on error.

        Example:
            with storage.open_data_writer("data_0.csv") as writer:
                for chunk in chunks:
                    writer.write(chunk)
            toc.record_data_offset(ordinal, writer.byte_range)
        """
        path = self._path(artifact)
        with self._lock:
            if artifact in self._writing:
                raise RuntimeError(f"{artifact} already has an open writer")
            path.parent.mkdir(parents=True, exist_ok=True)
            f = open(path, "ab")
            self._writing.add(artifact)
        try:
            writer = LocalDataWriter(f, artifact, f.seek(0, os.SEEK_END))
            try:
                yield writer
            except BaseException:
                f.truncate(writer.offset)
                raise
        finally:
            f.close()
            with self._lock:
                self._writing.discard(artifact)

    def open_data_reader(self, byte_range: ByteRange) -> LocalDataReader:
        path = self._path(byte_range.artifact, byte_range.backup_id)
        size = path.stat().st_size
        if size < byte_range.end:
            raise ValueError(
                f"Truncated data in {path}: expected {byte_range.length} bytes "
                f"at offset {byte_range.offset}, got {max(0, size - byte_range.offset)}"
            )
        return LocalDataReader(path, byte_range)

    def write_data(self, artifact: str, data: bytes) -> ByteRange:
        # Held for the whole append so concurrent callers never interleave.
        with self._lock:
            with self.open_data_writer(artifact) as writer:
                writer.write(data)
        return writer.byte_range

    def read_data(self, byte_range: ByteRange) -> bytes:
        with self.open_data_reader(byte_range) as reader:
            return reader.read()

    def artifact_size(self, artifact: str, backup_id: str | None = None) -> int | None:
        path = self._path(artifact, backup_id)
        return path.stat().st_size if path.exists() else None

    def write_text(self, name: str, content: str) -> None:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def read_text(self, name: str) -> str:
        return self._path(name).read_text()

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def list_backups(self) -> list[str]:
        """Backup ids under the root, oldest first."""
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())
