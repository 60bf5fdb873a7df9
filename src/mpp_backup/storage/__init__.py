"""Backup storage backends."""

from mpp_backup.storage.base import (
    MANIFEST_NAME,
    REPORT_NAME,
    RESTORE_REPORT_NAME,
    STATISTICS_NAME,
    Storage,
    data_artifact_name,
)
from mpp_backup.storage.local import LocalDirectoryStorage

__all__ = [
    "MANIFEST_NAME",
    "REPORT_NAME",
    "RESTORE_REPORT_NAME",
    "STATISTICS_NAME",
    "Storage",
    "LocalDirectoryStorage",
    "data_artifact_name",
]
