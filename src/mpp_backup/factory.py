"""Connection resolution and adapter factory.

Supports two configuration modes:
1. Profile mode (db.toml): named profiles selected by ``--profile`` or the
   ``MPP_DB_PROFILE`` env var
2. URL mode: an explicit URL, or ``MPP_DATABASE_URL`` in the environment
"""

import os
from pathlib import Path
from typing import Any
from urllib.parse import quote

from mpp_backup.adapters.postgres import AsyncPostgresAdapter
from mpp_backup.config.loader import load_db_config
from mpp_backup.config.models import DatabaseConfig, DatabaseProfile

DEFAULT_ENV_PREFIX = "MPP_"

PASSWORD_PLACEHOLDER = "[YOUR-PASSWORD]"


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""

    pass


def get_active_profile_name(
    profile_name: str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
) -> str:
    """Get active profile name from the argument or env var.

    Priority:
    1. ``profile_name`` argument (``--profile``)
    2. ``{env_prefix}DB_PROFILE`` env var
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    if profile_name:
        return profile_name

    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Pass --profile <name> or set {env_prefix}DB_PROFILE=<name>."
    )


def get_active_profile(
    profile_name: str | None = None,
    config: DatabaseConfig | None = None,
    config_path: Path | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
) -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured or it is not in db.toml
    """
    name = get_active_profile_name(profile_name, env_prefix)
    config = config or load_db_config(config_path)

    if name not in config.profiles:
        available = ", ".join(config.profiles) or "none"
        raise ProfileNotFoundError(
            f"Profile '{name}' not found in db.toml.\nAvailable profiles: {available}"
        )

    return name, config.profiles[name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    The password is URL-encoded so special characters survive.
    """
    url = profile.url
    if profile.db_password and PASSWORD_PLACEHOLDER in url:
        url = url.replace(PASSWORD_PLACEHOLDER, quote(profile.db_password, safe=""))
    return url


def resolve_database_url(
    profile_name: str | None = None,
    database_url: str | None = None,
    config_path: Path | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
) -> str:
    """Pick the connection URL for a run.

    Priority:
    1. ``database_url`` argument (``--url``)
    2. Profile from db.toml (``--profile`` or ``{env_prefix}DB_PROFILE``)
    3. ``{env_prefix}DATABASE_URL`` env var

    Raises:
        ProfileNotFoundError: If no database configuration found
    """
    if database_url:
        return database_url

    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if profile_name or env_profile:
        _, profile = get_active_profile(profile_name, config_path=config_path, env_prefix=env_prefix)
        return resolve_url(profile)

    env_url = os.environ.get(f"{env_prefix}DATABASE_URL")
    if env_url:
        return env_url

    raise ProfileNotFoundError(
        "No database configuration found.\n"
        "Either:\n"
        f"  1. Create db.toml and pass --profile <name> (or set {env_prefix}DB_PROFILE)\n"
        f"  2. Pass --url or set {env_prefix}DATABASE_URL"
    )


def get_adapter(database_url: str, **engine_kwargs: Any) -> AsyncPostgresAdapter:
    """Create an adapter for ``database_url``.

    Example:
        >>> adapter = get_adapter(resolve_database_url("warehouse"), pool_size=9)
    """
    return AsyncPostgresAdapter(database_url, **engine_kwargs)
