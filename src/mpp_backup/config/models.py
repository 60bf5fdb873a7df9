"""Pydantic models for database profiles and backup settings."""

from pydantic import BaseModel, Field

from mpp_backup.catalog.snapshot import DEFAULT_LOCK_WAIT_TIMEOUT
from mpp_backup.statistics.versions import MAX_STATISTIC_SLOTS


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: str = "postgres"


class BackupSettings(BaseModel):
    """Defaults for backup and restore runs, from the ``[backup]`` table."""

    jobs: int = Field(default=4, ge=1)
    predata_jobs: int = Field(default=1, ge=1)
    postdata_jobs: int | None = Field(default=None, ge=1)
    lock_wait_timeout: float = Field(default=DEFAULT_LOCK_WAIT_TIMEOUT, gt=0)
    with_stats: bool = True
    strict: bool = False
    backup_dir: str = "backups"
    # Slots the restore target exposes; None detects it from the server version
    target_slot_count: int | None = Field(default=None, ge=1, le=MAX_STATISTIC_SLOTS)


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
    backup: BackupSettings = Field(default_factory=BackupSettings)
