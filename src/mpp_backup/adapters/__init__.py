"""Database adapters package.

Provides the ``DatabaseClient`` and ``WorkerConnection`` Protocols and the
async PostgreSQL implementation used for Greenplum and Cloudberry.

Usage:
    from mpp_backup.adapters import AsyncPostgresAdapter, DatabaseClient
"""

from mpp_backup.adapters.base import DatabaseClient, WorkerConnection
from mpp_backup.adapters.postgres import (
    AsyncPostgresAdapter,
    PostgresWorker,
    create_async_engine_pooled,
    normalize_url,
)

__all__ = [
    "DatabaseClient",
    "WorkerConnection",
    "AsyncPostgresAdapter",
    "PostgresWorker",
    "create_async_engine_pooled",
    "normalize_url",
]
