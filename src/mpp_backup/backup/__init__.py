"""Backup and restore operations.

Usage:
    from mpp_backup.backup import backup_database, restore_database, validate_backup
"""

from mpp_backup.backup.backup_restore import (
    BackupResult,
    backup_database,
    load_toc,
    restore_database,
    validate_backup,
)

__all__ = [
    "BackupResult",
    "backup_database",
    "load_toc",
    "restore_database",
    "validate_backup",
]
