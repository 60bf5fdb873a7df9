"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from mpp_backup.config import load_db_config, DatabaseProfile, DatabaseConfig
"""

from mpp_backup.config.loader import load_db_config
from mpp_backup.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

__all__ = ["load_db_config", "BackupSettings", "DatabaseConfig", "DatabaseProfile"]
