"""mpp-backup: Parallel, snapshot-consistent backup and restore for MPP Postgres.

Captures metadata, table data and planner statistics from Greenplum-family
databases under one exported snapshot, orders everything into a table of
contents, and replays it phase by phase with parallel workers.

Usage:
    from mpp_backup import SnapshotManager, backup_database, get_adapter
    from mpp_backup import LocalDirectoryStorage, restore_database
    from mpp_backup import FilterSpec, TableOfContents, Report
"""

__version__ = "0.1.0"

# Adapters
from mpp_backup.adapters.base import DatabaseClient, WorkerConnection
from mpp_backup.adapters.postgres import AsyncPostgresAdapter

# Config
from mpp_backup.config.loader import load_db_config
from mpp_backup.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

# Factory
from mpp_backup.factory import (
    ProfileNotFoundError,
    get_adapter,
    resolve_database_url,
    resolve_url,
)

# Catalog
from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.introspector import CatalogIntrospector
from mpp_backup.catalog.snapshot import SnapshotHandle, SnapshotManager

# TOC
from mpp_backup.toc.models import TOCEntry
from mpp_backup.toc.toc import TableOfContents

# Execution
from mpp_backup.executor.report import Report
from mpp_backup.storage.local import LocalDirectoryStorage

# Backup / restore
from mpp_backup.backup.backup_restore import (
    BackupResult,
    backup_database,
    restore_database,
    validate_backup,
)

__all__ = [
    # Adapters
    "DatabaseClient",
    "WorkerConnection",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "BackupSettings",
    "DatabaseProfile",
    "DatabaseConfig",
    # Factory
    "get_adapter",
    "resolve_database_url",
    "resolve_url",
    "ProfileNotFoundError",
    # Catalog
    "FilterSpec",
    "CatalogIntrospector",
    "SnapshotHandle",
    "SnapshotManager",
    # TOC
    "TOCEntry",
    "TableOfContents",
    # Execution
    "Report",
    "LocalDirectoryStorage",
    # Backup / restore
    "BackupResult",
    "backup_database",
    "restore_database",
    "validate_backup",
]
