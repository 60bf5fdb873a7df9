"""CLI for parallel backup and restore.

Usage:
    MPP_DB_PROFILE=warehouse mpp-backup backup --jobs 8 --include-schema sales
    mpp-backup restore 20260118093000 --url postgresql://gpadmin@mdw/analytics
    mpp-backup restore 20260118093000 --profile staging --resume
    mpp-backup toc 20260118093000 --phase postdata
    mpp-backup validate 20260118093000
    mpp-backup profiles

Commands:
    backup    - Back up metadata, data and statistics under one snapshot
    restore   - Replay a backup into a target database
    toc       - Show the table of contents of a backup
    validate  - Check a backup's manifest, data and statistics files
    profiles  - List available profiles

Exit codes: 0 success, 1 fatal error, 2 partial run (some entries failed
or were skipped).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mpp_backup.backup.backup_restore import (
    backup_database,
    load_toc,
    restore_database,
    validate_backup,
)
from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import Phase
from mpp_backup.catalog.snapshot import SnapshotManager
from mpp_backup.config.loader import DEFAULT_CONFIG_NAME, load_db_config
from mpp_backup.config.models import BackupSettings
from mpp_backup.errors import BackupError, RunAborted
from mpp_backup.executor.report import EntryStatus, Report
from mpp_backup.factory import (
    DEFAULT_ENV_PREFIX,
    ProfileNotFoundError,
    get_active_profile_name,
    get_adapter,
    resolve_database_url,
)
from mpp_backup.statistics.versions import EngineFeatures
from mpp_backup.storage.base import RESTORE_REPORT_NAME
from mpp_backup.storage.local import LocalDirectoryStorage

console = Console()

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


# ============================================================================
# Helpers
# ============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich on stderr.

    Can be called multiple times safely.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )
    # Engine and driver chatter only in verbose mode
    for name in ("sqlalchemy", "asyncpg", "psycopg"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


def _load_settings(args: argparse.Namespace) -> BackupSettings:
    """Backup settings from db.toml, or defaults when there is none."""
    config_path = Path(args.config) if args.config else None
    if config_path is None and not (Path.cwd() / DEFAULT_CONFIG_NAME).exists():
        return BackupSettings()
    return load_db_config(config_path).backup


def _backup_dir(args: argparse.Namespace) -> str:
    """``--backup-dir``, else ``[backup].backup_dir`` from db.toml."""
    return args.backup_dir or _load_settings(args).backup_dir


def _filters_from_args(args: argparse.Namespace) -> FilterSpec:
    return FilterSpec.from_lists(
        include_schemas=args.include_schema,
        exclude_schemas=args.exclude_schema,
        include_relations=args.include_table,
        exclude_relations=args.exclude_table,
    )


def _database_url(args: argparse.Namespace) -> str:
    return resolve_database_url(
        profile_name=args.profile,
        database_url=args.url,
        config_path=Path(args.config) if args.config else None,
        env_prefix=args.env_prefix,
    )


def _print_report(report: Report) -> None:
    counts = report.counts()
    style = {"success": "green", "partial": "yellow", "aborted": "red"}[report.status]
    console.print(
        f"[bold {style}]{report.operation} {report.status}[/bold {style}]: "
        f"{counts['succeeded']} succeeded, {counts['failed']} failed, "
        f"{counts['skipped']} skipped"
    )
    if report.aborted_reason:
        console.print(f"[red]Aborted:[/red] {report.aborted_reason}")

    problems = [o for o in report.outcomes if o.status != EntryStatus.SUCCEEDED]
    if problems:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Phase")
        table.add_column("Object")
        table.add_column("Status")
        table.add_column("Reason")
        for outcome in problems:
            color = "red" if outcome.status == EntryStatus.FAILED else "yellow"
            table.add_row(
                str(outcome.ordinal),
                outcome.phase.value,
                f"{outcome.object_kind.value} {outcome.name}",
                f"[{color}]{outcome.status.value}[/{color}]",
                outcome.reason or "",
            )
        console.print(table)

    warnings = report.warnings()
    if warnings:
        console.print(f"[yellow]{len(warnings)} warnings[/yellow]")
        for warning in warnings:
            console.print(f"  [dim]{warning}[/dim]")


def _exit_code(report: Report) -> int:
    return EXIT_OK if report.status == "success" else EXIT_PARTIAL


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--profile", "-p", help="Profile name from db.toml")
    parser.add_argument("--url", help="Connection URL (overrides profiles)")


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--include-schema", action="append", default=[], metavar="SCHEMA",
        help="Only this schema (repeatable)",
    )
    parser.add_argument(
        "--exclude-schema", action="append", default=[], metavar="SCHEMA",
        help="Skip this schema (repeatable)",
    )
    parser.add_argument(
        "--include-table", action="append", default=[], metavar="SCHEMA.TABLE",
        help="Only this relation (repeatable)",
    )
    parser.add_argument(
        "--exclude-table", action="append", default=[], metavar="SCHEMA.TABLE",
        help="Skip this relation (repeatable)",
    )


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command.

    Returns:
        0 on success, 1 on fatal error, 2 on partial backup.
    """
    settings = _load_settings(args)
    url = _database_url(args)
    filters = _filters_from_args(args)
    jobs = args.jobs or settings.jobs
    backup_dir = args.backup_dir or settings.backup_dir

    previous_toc = None
    if args.incremental_from:
        previous_toc = load_toc(LocalDirectoryStorage(backup_dir, args.incremental_from))

    storage = LocalDirectoryStorage(backup_dir)
    console.print(f"Backing up to [bold cyan]{storage.directory}[/bold cyan]", style="dim")

    adapter = get_adapter(url, pool_size=jobs + 1)
    try:
        async with SnapshotManager(url, lock_wait_timeout=settings.lock_wait_timeout) as manager:
            result = await backup_database(
                manager,
                adapter,
                storage,
                filters=filters,
                jobs=jobs,
                with_stats=settings.with_stats and not args.no_stats,
                strict=settings.strict or args.strict,
                previous_toc=previous_toc,
                handle_interrupts=True,
            )
    finally:
        await adapter.close()

    counts = result.toc.counts_by_phase()
    console.print()
    console.print(
        f"[bold green]v[/bold green] Backup [bold cyan]{result.backup_id}[/bold cyan]: "
        + ", ".join(f"{n} {phase.value}" for phase, n in counts.items())
    )
    _print_report(result.report)
    return _exit_code(result.report)


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Returns:
        0 on success, 1 on fatal error, 2 on partial restore.
    """
    settings = _load_settings(args)
    url = _database_url(args)
    filters = _filters_from_args(args)
    jobs = args.jobs or settings.jobs
    storage = LocalDirectoryStorage(args.backup_dir or settings.backup_dir, args.backup_id)

    resume_report = None
    if args.resume and storage.exists(RESTORE_REPORT_NAME):
        resume_report = Report.from_json(storage.read_text(RESTORE_REPORT_NAME))
        console.print(
            f"Resuming: {len(resume_report.completed_ordinals())} entries already completed",
            style="dim",
        )

    adapter = get_adapter(url, pool_size=jobs + 1)
    try:
        target_features = None
        if settings.target_slot_count:
            version = await adapter.get_engine_version()
            target_features = EngineFeatures.for_version(version).with_slot_count(
                settings.target_slot_count
            )
        report = await restore_database(
            adapter,
            storage,
            filters=filters,
            jobs=jobs,
            postdata_jobs=args.postdata_jobs or settings.postdata_jobs,
            predata_jobs=settings.predata_jobs,
            with_stats=settings.with_stats and not args.no_stats,
            strict=settings.strict or args.strict,
            existing=args.assume_existing,
            resume_report=resume_report,
            target_features=target_features,
            lock_wait_timeout=settings.lock_wait_timeout,
            clean=args.clean,
            handle_interrupts=True,
        )
    finally:
        await adapter.close()

    console.print()
    _print_report(report)
    return _exit_code(report)


def _run(coro) -> int:
    """Run an async command, mapping fatal errors to exit code 1."""
    try:
        return asyncio.run(coro)
    except RunAborted as e:
        console.print(f"\n[bold red]x[/bold red] Run aborted: {e.reason}")
        if e.report is not None:
            _print_report(e.report)
        return EXIT_FATAL
    except (BackupError, ProfileNotFoundError, FileNotFoundError, ValueError) as e:
        console.print(f"\n[bold red]x[/bold red] {e}")
        return EXIT_FATAL


# ============================================================================
# Commands
# ============================================================================


def cmd_backup(args: argparse.Namespace) -> int:
    """Back up a database.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return _run(_async_backup(args))


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a backup.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return _run(_async_restore(args))


def cmd_toc(args: argparse.Namespace) -> int:
    """Print the table of contents of a backup.

    Reads only local files -- no database calls.

    Returns:
        0 on success, 1 if the manifest cannot be read.
    """
    try:
        storage = LocalDirectoryStorage(_backup_dir(args), args.backup_id)
        toc = load_toc(storage)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return EXIT_FATAL

    table = Table(
        title=f"Backup {storage.backup_id}", show_header=True, header_style="bold"
    )
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Depends on", style="dim")
    table.add_column("Data", style="dim")

    phases = {Phase(p) for p in args.phase} if args.phase else None
    for entry in toc:
        if phases and entry.phase not in phases:
            continue
        data = ""
        if entry.data_range is not None:
            r = entry.data_range
            data = f"{r.artifact}@{r.offset}+{r.length}"
            if r.backup_id:
                data += f" ({r.backup_id})"
        table.add_row(
            str(entry.ordinal),
            entry.phase.value,
            entry.object_kind.value,
            entry.qualified_name,
            ", ".join(str(d) for d in entry.depends_on),
            data,
        )

    console.print(table)
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a backup.

    Returns:
        0 when valid, 1 otherwise.
    """
    try:
        storage = LocalDirectoryStorage(_backup_dir(args), args.backup_id)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return EXIT_FATAL
    result = validate_backup(storage)

    for error in result["errors"]:
        console.print(f"  [red]x[/red] {error}")
    for warning in result["warnings"]:
        console.print(f"  [yellow]![/yellow] {warning}")

    if result["valid"]:
        console.print(f"[bold green]v[/bold green] Backup {storage.backup_id} is valid")
        return EXIT_OK
    console.print(f"[bold red]x[/bold red] Backup {storage.backup_id} is invalid")
    return EXIT_FATAL


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Reads only local TOML config -- no database calls.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    try:
        config = load_db_config(Path(args.config) if args.config else None)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return EXIT_FATAL

    try:
        current = get_active_profile_name(env_prefix=args.env_prefix)
    except ProfileNotFoundError:
        current = None

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        table.add_row(marker, name, profile.provider, profile.description or "")

    console.print(table)
    return EXIT_OK


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mpp-backup",
        description="Parallel backup and restore for Greenplum-family databases",
    )
    parser.add_argument(
        "--env-prefix",
        default=DEFAULT_ENV_PREFIX,
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument("--config", help=f"Path to {DEFAULT_CONFIG_NAME}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser("backup", help="Back up a database")
    _add_connection_args(p_backup)
    _add_filter_args(p_backup)
    p_backup.add_argument("--backup-dir", help="Root directory of backups")
    p_backup.add_argument("--jobs", "-j", type=int, help="Parallel data workers")
    p_backup.add_argument("--no-stats", action="store_true", help="Skip planner statistics")
    p_backup.add_argument("--strict", action="store_true", help="Abort on the first failed table")
    p_backup.add_argument(
        "--incremental-from",
        metavar="BACKUP_ID",
        help="Reuse unchanged append-optimized table data from this backup",
    )
    p_backup.set_defaults(func=cmd_backup)

    # restore command
    p_restore = subparsers.add_parser("restore", help="Restore a backup")
    p_restore.add_argument("backup_id", help="Backup id (timestamp directory name)")
    _add_connection_args(p_restore)
    _add_filter_args(p_restore)
    p_restore.add_argument("--backup-dir", help="Root directory of backups")
    p_restore.add_argument("--jobs", "-j", type=int, help="Parallel workers")
    p_restore.add_argument("--postdata-jobs", type=int, help="Parallel postdata workers")
    p_restore.add_argument("--no-stats", action="store_true", help="Skip statistics install")
    p_restore.add_argument("--strict", action="store_true", help="Abort on the first failed table")
    p_restore.add_argument(
        "--assume-existing", action="append", default=[], metavar="NAME",
        help="Schema or schema.name already present in the target (repeatable)",
    )
    p_restore.add_argument(
        "--resume", action="store_true",
        help="Skip entries completed by the previous restore of this backup",
    )
    p_restore.add_argument(
        "--clean", action="store_true",
        help="Drop objects and truncate tables before restoring them",
    )
    p_restore.set_defaults(func=cmd_restore)

    # toc command
    p_toc = subparsers.add_parser("toc", help="Show the table of contents of a backup")
    p_toc.add_argument("backup_id")
    p_toc.add_argument("--backup-dir", help="Root directory of backups")
    p_toc.add_argument(
        "--phase", action="append", choices=[p.value for p in Phase],
        help="Only entries of this phase (repeatable)",
    )
    p_toc.set_defaults(func=cmd_toc)

    # validate command
    p_validate = subparsers.add_parser("validate", help="Validate a backup")
    p_validate.add_argument("backup_id")
    p_validate.add_argument("--backup-dir", help="Root directory of backups")
    p_validate.set_defaults(func=cmd_validate)

    # profiles command
    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
