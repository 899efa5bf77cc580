"""
Command-line interface for issuevault.

Provides commands to inspect a project, migrate its legacy SQLite store to
the Dolt server, and manage portable and native backups.

Built on argparse: one cmd_* function per command, each returning an exit code.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

from issuevault import __version__
from issuevault.backup import (
    BackupManager,
    BackupStatus,
    NativeBackupManager,
    StaleDatabaseError,
    backup_status,
    check_database_freshness,
    ensure_database_fresh,
    git_backup,
    has_git_remote,
    is_backup_git_push_enabled,
    maybe_auto_backup,
    restore_backup,
)
from issuevault.backup.auto import backup_directory
from issuevault.backup.native import format_size, size_info
from issuevault.best_effort import run_best_effort
from issuevault.config.credentials import (
    MIN_PASSPHRASE_LENGTH,
    PASSWORD_KEY,
    SERVER_SCOPE,
    CredentialError,
    CredentialStore,
    resolve_server_password,
)
from issuevault.config.metadata import load_metadata
from issuevault.config.settings import (
    ConfigurationError,
    Settings,
    find_project_dir,
    get_config_path,
    load_config,
)
from issuevault.migration import MigrationCommitter, MigrationStatus, select_extractor
from issuevault.migration.extract import find_legacy_database
from issuevault.storage.target_store import TargetConfig, TargetStore

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a message only if verbosity is at least ``level``."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def output_json(data: Any) -> None:
    output(json.dumps(data, indent=2, default=str), force=True)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the issuevault CLI."""
    parser = argparse.ArgumentParser(
        prog="issuevault",
        description="Migrate an issue tracker from SQLite to Dolt and keep it backed up",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"issuevault {__version__}",
    )

    parser.add_argument(
        "--dir",
        metavar="PATH",
        help="Project directory (default: nearest .issuevault above the working directory)",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override settings file location (default: <project>/config.yaml)",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show project backend and backup status",
        description="Display the active backend, server settings, legacy store and backups.",
    )
    info_parser.set_defaults(func=cmd_info)

    # migrate command
    migrate_parser = subparsers.add_parser(
        "migrate",
        help="Migrate the legacy SQLite store to the Dolt server",
        description=(
            "Back up the SQLite store, check the target server, import, verify row "
            "counts, then switch the project to the Dolt backend."
        ),
    )
    migrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Extract and report counts without writing anything",
    )
    migrate_parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    migrate_parser.add_argument(
        "--extractor",
        choices=["auto", "driver", "cli"],
        default="auto",
        help="How to read the SQLite store (default: auto)",
    )
    migrate_parser.set_defaults(func=cmd_migrate)

    # backup command and subcommands
    backup_parser = subparsers.add_parser(
        "backup",
        help="Export a portable JSONL backup",
        description="Export every table to JSONL files in the backup directory.",
    )
    backup_parser.add_argument(
        "--force",
        action="store_true",
        help="Export even if nothing changed since the last backup",
    )
    backup_parser.add_argument(
        "--allow-stale",
        action="store_true",
        help="Export even if issues.jsonl is newer than the last import",
    )
    backup_parser.set_defaults(func=cmd_backup)

    backup_subparsers = backup_parser.add_subparsers(
        title="backup commands",
        dest="backup_command",
        metavar="<subcommand>",
    )

    status_parser = backup_subparsers.add_parser(
        "status",
        help="Show the last portable and native backup",
    )
    status_parser.set_defaults(func=cmd_backup_status)

    restore_parser = backup_subparsers.add_parser(
        "restore",
        help="Restore the database from a portable backup",
        description="Re-import JSONL backup files into the Dolt database.",
    )
    restore_parser.add_argument(
        "path",
        nargs="?",
        metavar="PATH",
        help="Backup directory (default: the project's backup directory)",
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Count rows without writing",
    )
    restore_parser.set_defaults(func=cmd_backup_restore)

    init_parser = backup_subparsers.add_parser(
        "init",
        help="Set up a native Dolt backup destination",
        description="Register a filesystem path or remote URL with DOLT_BACKUP.",
    )
    init_parser.add_argument(
        "destination",
        metavar="PATH",
        help="Directory, file:// URL, or remote URL (https://, aws://, gs://)",
    )
    init_parser.set_defaults(func=cmd_backup_init)

    sync_parser = backup_subparsers.add_parser(
        "sync",
        help="Push the database to the native backup destination",
    )
    sync_parser.set_defaults(func=cmd_backup_sync)

    # check-freshness command
    freshness_parser = subparsers.add_parser(
        "check-freshness",
        help="Check whether issues.jsonl is newer than the last import",
    )
    freshness_parser.set_defaults(func=cmd_check_freshness)

    # credentials command
    credentials_parser = subparsers.add_parser(
        "credentials",
        help="Manage the encrypted server password",
    )
    credentials_subparsers = credentials_parser.add_subparsers(
        title="credentials commands",
        dest="credentials_command",
        metavar="<subcommand>",
        required=True,
    )
    set_password_parser = credentials_subparsers.add_parser(
        "set-password",
        help="Store the Dolt server password in the encrypted credential store",
    )
    set_password_parser.set_defaults(func=cmd_credentials_set_password)
    clear_password_parser = credentials_subparsers.add_parser(
        "clear-password",
        help="Remove the stored Dolt server password",
    )
    clear_password_parser.set_defaults(func=cmd_credentials_clear_password)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _project_dir(args: argparse.Namespace) -> Path:
    if args.dir:
        return Path(args.dir)
    project_dir = find_project_dir()
    if project_dir is None:
        raise ConfigurationError(
            "No .issuevault directory found here or in any parent directory"
        )
    return project_dir


def _load_settings(args: argparse.Namespace, project_dir: Path) -> Settings:
    config_path = Path(args.config) if args.config else get_config_path(project_dir)
    return load_config(config_path)


def _open_store(project_dir: Path) -> TargetStore:
    """Open the project's Dolt database."""
    metadata = load_metadata(project_dir)
    if not metadata.is_target_backend:
        raise ConfigurationError(
            "Project still uses the SQLite backend. Run 'issuevault migrate' first."
        )
    password = resolve_server_password(project_dir)
    store = TargetStore(TargetConfig.from_metadata(metadata, password))
    return store.open()


def _auto_backup(project_dir: Path, settings: Settings, store: TargetStore | None) -> None:
    outcome = maybe_auto_backup(store, project_dir, settings, has_git_remote(project_dir))
    output_verbose(f"Auto backup: {outcome.value}")


def cmd_info(args: argparse.Namespace) -> int:
    """Show project backend and backup status."""
    project_dir = _project_dir(args)
    settings = _load_settings(args, project_dir)
    metadata = load_metadata(project_dir)
    legacy = find_legacy_database(project_dir)
    state = backup_status(backup_directory(project_dir, settings))

    info: dict[str, Any] = {
        "version": __version__,
        "project_dir": str(project_dir),
        "backend": metadata.backend,
        "target_database": metadata.target_database or None,
        "server": f"{metadata.server_host}:{metadata.effective_port()}",
        "pending_migration": metadata.pending_migration,
        "legacy_database": str(legacy) if legacy else None,
        "sync_mode": settings.sync.mode,
        "backup": state.to_dict() if state.has_run else None,
        "native_backup": NativeBackupManager(project_dir).status(),
    }

    if args.json:
        output_json(info)
        return 0

    output("issuevault Project Information")
    output("=" * 50)
    output()
    output(f"Version: {info['version']}")
    output(f"Project directory: {info['project_dir']}")
    output()
    output("Backend:")
    output(f"  Active: {info['backend']}")
    if metadata.is_target_backend:
        output(f"  Database: {info['target_database']}")
        output(f"  Server: {info['server']}")
    if info["legacy_database"]:
        output(f"  Legacy store: {info['legacy_database']}")
    if metadata.pending_migration:
        output("  Pending migration (interrupted run):")
        for key, value in sorted(metadata.pending_migration.items()):
            output(f"    {key}: {value}")
    output(f"  Sync mode: {info['sync_mode']}")
    output()
    output("Portable backup:")
    if state.has_run:
        output(f"  Last backup: {state.timestamp.isoformat()}")
        output(f"  Issues: {state.counts.issues}, events: {state.counts.events}")
    else:
        output("  Last backup: never")
    output()
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    """Migrate the legacy SQLite store to the Dolt server."""
    project_dir = _project_dir(args)
    settings = _load_settings(args, project_dir)

    committer = MigrationCommitter(
        project_dir,
        extractor=None if args.extractor == "auto" else select_extractor(args.extractor),
        password=resolve_server_password(project_dir),
        config_path=Path(args.config) if args.config else None,
    )

    if not args.dry_run and not args.yes and not args.json:
        legacy = find_legacy_database(project_dir)
        if legacy is not None:
            output(f"This will migrate {legacy} to the Dolt server and retire the file.")
            response = input("Proceed with migration? [y/N]: ").strip().lower()
            if response not in ("y", "yes"):
                output("Migration cancelled.")
                return 0

    result = committer.run(dry_run=args.dry_run)

    if args.json:
        output_json(result.to_dict())
    else:
        output("issuevault Migration")
        output("=" * 50)
        output()
        if result.status is MigrationStatus.NO_LEGACY_STORE:
            output("No legacy SQLite store found; nothing to migrate.")
        elif result.status is MigrationStatus.ALREADY_MIGRATED:
            output("Legacy store already migrated; nothing to do.")
        elif result.status is MigrationStatus.RETIREMENT_COMPLETED:
            output(f"Project already uses database {result.database_name}.")
            output(f"Retired legacy store: {result.migrated_path}")
        else:
            if result.status is MigrationStatus.DRY_RUN:
                output("Dry run: nothing was written.")
                output()
            output(f"Database: {result.database_name}")
            output("Rows:")
            for table, count in result.source_counts.items():
                target = result.target_counts.get(table)
                suffix = f" -> {target} in target" if target is not None else ""
                output(f"  {table}: {count}{suffix}")
            if result.status is MigrationStatus.MIGRATED:
                output()
                output(f"Backup of legacy store: {result.backup_path}")
                output(f"Legacy store retired to: {result.migrated_path}")
        for warning in result.warnings:
            output(f"Warning: {warning}")

    if result.status is MigrationStatus.MIGRATED:
        outcome = run_best_effort("Opening migrated database", _open_store, project_dir)
        if outcome.succeeded:
            with outcome.value as store:
                _auto_backup(project_dir, settings, store)

    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Export a portable JSONL backup."""
    project_dir = _project_dir(args)
    settings = _load_settings(args, project_dir)
    backup_dir = backup_directory(project_dir, settings)

    with _open_store(project_dir) as store:
        if not args.allow_stale:
            try:
                ensure_database_fresh(store, project_dir)
            except StaleDatabaseError as e:
                output_error(f"{e} Pass --allow-stale to export anyway.")
                return 1
        result = BackupManager(store, backup_dir).export(force=args.force)

    git_result = None
    if result.status is BackupStatus.EXPORTED and is_backup_git_push_enabled(
        settings, has_git_remote(project_dir)
    ):
        git_result = git_backup(backup_dir, git_repo=settings.backup.git_repo)

    if args.json:
        data = {"status": result.status.value, "path": str(backup_dir), **result.state.to_dict()}
        if git_result is not None:
            data["git"] = {"committed": git_result.committed, "pushed": git_result.pushed}
        output_json(data)
        return 0

    if result.status is BackupStatus.UNCHANGED:
        output("No changes since last backup.")
        return 0

    counts = result.state.counts
    output(f"Backup written to {backup_dir}")
    output(f"  Issues: {counts.issues}")
    output(f"  Events: {counts.events} ({result.events_appended} new)")
    output(f"  Comments: {counts.comments}")
    output(f"  Dependencies: {counts.dependencies}")
    output(f"  Labels: {counts.labels}")
    output(f"  Config: {counts.config}")
    if git_result is not None:
        if git_result.push_warning:
            output(f"Warning: {git_result.push_warning}")
        elif git_result.pushed:
            output("Pushed backup to git remote.")
    return 0


def cmd_backup_status(args: argparse.Namespace) -> int:
    """Show the last portable and native backup."""
    project_dir = _project_dir(args)
    settings = _load_settings(args, project_dir)
    backup_dir = backup_directory(project_dir, settings)
    state = backup_status(backup_dir)
    native_manager = NativeBackupManager(project_dir)
    native = native_manager.status()
    database_size = native_manager.database_size()

    if args.json:
        output_json(
            {
                "portable": state.to_dict(),
                "native": native,
                "database_size": size_info(database_size),
            }
        )
        return 0

    output("Backup Status")
    output("=" * 50)
    output()
    output(f"Portable backup ({backup_dir}):")
    if not state.has_run:
        output("  Last backup: never")
    else:
        output(f"  Last backup: {state.timestamp.isoformat()}")
        output(f"  Commit: {state.last_target_commit or 'unknown'}")
        output(f"  Event watermark: {state.last_event_id}")
        for table, count in state.counts.to_dict().items():
            output(f"  {table}: {count}")

    if native.get("configured"):
        output()
        output("Native backup:")
        output(f"  Destination: {native['backup_url']}")
        output(f"  Configured: {native['created_at']}")
        if native.get("last_sync"):
            output(f"  Last sync: {native['last_sync']} (took {native['sync_duration']}s)")
        else:
            output("  Last sync: never")
        if native.get("backup_size"):
            output(f"  Backup size: {native['backup_size']['human']}")

    if database_size is not None:
        output()
        output(f"Database size: {format_size(database_size)}")
    return 0


def cmd_backup_restore(args: argparse.Namespace) -> int:
    """Restore the database from a portable backup."""
    project_dir = _project_dir(args)
    settings = _load_settings(args, project_dir)
    default_dir = backup_directory(project_dir, settings)
    source = Path(args.path) if args.path else default_dir

    with _open_store(project_dir) as store:
        if not args.dry_run:
            store.ensure_schema()
        result = restore_backup(store, source, dry_run=args.dry_run, state_dir=default_dir)
        if not args.dry_run:
            _auto_backup(project_dir, settings, store)

    if args.json:
        output_json(result.to_dict())
        return 0

    output("Dry run: nothing was written." if args.dry_run else f"Restored from {source}")
    output(f"  Issues: {result.issues}")
    output(f"  Comments: {result.comments}")
    output(f"  Dependencies: {result.dependencies}")
    output(f"  Labels: {result.labels}")
    output(f"  Events: {result.events}")
    output(f"  Config: {result.config}")
    if result.existing:
        output(f"  Already present: {result.existing}")
    if result.warnings:
        output()
        output(f"  {len(result.warnings)} warnings (see log)")
    return 0


def cmd_backup_init(args: argparse.Namespace) -> int:
    """Set up a native Dolt backup destination."""
    project_dir = _project_dir(args)
    manager = NativeBackupManager(project_dir)

    with _open_store(project_dir) as store:
        config = manager.init_destination(store, args.destination)

    if args.json:
        output_json({**config.to_dict(), "initialized": True})
        return 0

    output(f"Backup destination configured: {config.backup_url}")
    output("Run 'issuevault backup sync' to push your data.")
    return 0


def cmd_backup_sync(args: argparse.Namespace) -> int:
    """Push the database to the native backup destination."""
    project_dir = _project_dir(args)
    manager = NativeBackupManager(project_dir)

    with _open_store(project_dir) as store:
        state = manager.sync(store)

    if args.json:
        output_json({"synced": True, "duration": state.duration})
        return 0

    output(f"Backup synced in {state.duration:.3f}s")
    return 0


def cmd_check_freshness(args: argparse.Namespace) -> int:
    """Check whether issues.jsonl is newer than the last import."""
    project_dir = _project_dir(args)

    with _open_store(project_dir) as store:
        report = check_database_freshness(store, project_dir)

    if args.json:
        output_json(
            {
                "status": report.status.value,
                "reason": report.reason,
                "file_mtime": report.file_mtime,
                "last_import": report.last_import,
            }
        )
    elif report.is_stale:
        output_error(
            f"Database may be out of date: {report.file_path} is newer than the last "
            "import. Run 'issuevault backup restore' to re-import."
        )
    else:
        output(f"Database is {report.status.value}" + (f": {report.reason}" if report.reason else ""))

    return 1 if report.is_stale else 0


def _prompt_new_passphrase() -> str:
    """Ask for a new passphrase twice until both entries agree."""
    output(f"Choose a passphrase for the credential store ({MIN_PASSPHRASE_LENGTH}+ characters).")
    while True:
        first = getpass.getpass("New passphrase: ")
        if len(first) < MIN_PASSPHRASE_LENGTH:
            output_error(f"Too short, use at least {MIN_PASSPHRASE_LENGTH} characters.")
        elif getpass.getpass("Repeat passphrase: ") != first:
            output_error("The two entries differ, try again.")
        else:
            return first


def cmd_credentials_set_password(args: argparse.Namespace) -> int:
    """Store the Dolt server password in the encrypted credential store."""
    credential_store = CredentialStore(_project_dir(args))

    if credential_store.is_initialized():
        credential_store.unlock(getpass.getpass("Passphrase: "))
    else:
        credential_store.initialize(_prompt_new_passphrase())

    try:
        if credential_store.has_credential(SERVER_SCOPE, PASSWORD_KEY):
            output("Replacing the stored server password.")
        credential_store.set_credential(
            SERVER_SCOPE, PASSWORD_KEY, getpass.getpass("Dolt server password: ")
        )
    finally:
        credential_store.lock()

    output("Server password stored.")
    output("Set ISSUEVAULT_PASSPHRASE so commands can unlock it without prompting.")
    return 0


def cmd_credentials_clear_password(args: argparse.Namespace) -> int:
    """Remove the Dolt server password from the credential store."""
    credential_store = CredentialStore(_project_dir(args))
    if not credential_store.is_initialized():
        output("No credential store found.")
        return 0

    credential_store.unlock(getpass.getpass("Passphrase: "))
    try:
        if not credential_store.has_credential(SERVER_SCOPE, PASSWORD_KEY):
            output("No server password stored.")
            return 0
        credential_store.delete_credential(SERVER_SCOPE, PASSWORD_KEY)
    finally:
        credential_store.lock()

    output("Server password removed.")
    return 0


def main() -> NoReturn:
    """Main entry point for the issuevault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except CredentialError as e:
        output_error(f"Credential error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
