"""
Opportunistic backup after state-changing commands.

maybe_auto_backup() is called by the CLI after operations that change the
target store. It never raises: every reason not to back up is a distinct
outcome, and an export failure is logged and reported as FAILED.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from issuevault.backup.git import git_backup
from issuevault.backup.manager import BackupError, BackupManager, BackupStatus, load_backup_state
from issuevault.best_effort import run_best_effort
from issuevault.config.settings import Settings
from issuevault.storage.target_store import TargetStore

logger = logging.getLogger(__name__)


class AutoBackupOutcome(str, Enum):
    DISABLED = "disabled"
    NO_STORE = "no_store"
    THROTTLED = "throttled"
    UNCHANGED = "unchanged"
    EXPORTED = "exported"
    FAILED = "failed"


def is_backup_auto_enabled(settings: Settings, has_git_remote: bool) -> bool:
    """An explicit backup.enabled wins; unset means on when a git remote exists."""
    if settings.backup.enabled is not None:
        return settings.backup.enabled
    return has_git_remote


def is_backup_git_push_enabled(settings: Settings, has_git_remote: bool) -> bool:
    """An explicit backup.git_push wins; unset follows automatic backup."""
    if settings.backup.git_push is not None:
        return settings.backup.git_push
    return is_backup_auto_enabled(settings, has_git_remote)


def backup_directory(project_dir: Path, settings: Settings) -> Path:
    directory = Path(settings.backup.directory)
    if directory.is_absolute():
        return directory
    return Path(project_dir) / directory


def maybe_auto_backup(
    store: TargetStore | None,
    project_dir: Path,
    settings: Settings,
    has_git_remote: bool,
    clock: Callable[[], datetime] | None = None,
    git_sync: Callable[..., object] = git_backup,
) -> AutoBackupOutcome:
    """
    Export a backup if one is due.

    Args:
        store: Target store, possibly None or already closed.
        project_dir: Project directory.
        settings: Loaded settings.
        has_git_remote: Whether the project repository has a git remote.
        clock: Source of the current time.
        git_sync: Function committing and pushing the backup directory.

    Returns:
        The AutoBackupOutcome; reasons to skip are checked in order.
    """
    clock = clock or (lambda: datetime.now(UTC))

    if not is_backup_auto_enabled(settings, has_git_remote):
        return AutoBackupOutcome.DISABLED

    if store is None or store.closed:
        logger.debug("Skipping auto backup: store is not open")
        return AutoBackupOutcome.NO_STORE

    backup_dir = backup_directory(project_dir, settings)

    try:
        state = load_backup_state(backup_dir)
    except BackupError as e:
        logger.warning(f"Auto backup skipped: {e}")
        return AutoBackupOutcome.FAILED

    interval = timedelta(minutes=settings.backup.interval_minutes)
    if state.timestamp is not None and clock() - state.timestamp < interval:
        logger.debug(f"Skipping auto backup: last backup at {state.timestamp.isoformat()}")
        return AutoBackupOutcome.THROTTLED

    manager = BackupManager(store, backup_dir, clock=clock)
    try:
        result = manager.export(force=False)
    except BackupError as e:
        logger.warning(f"Auto backup failed: {e}")
        return AutoBackupOutcome.FAILED

    if result.status is BackupStatus.UNCHANGED:
        return AutoBackupOutcome.UNCHANGED

    if is_backup_git_push_enabled(settings, has_git_remote):
        run_best_effort(
            "Backup git sync",
            git_sync,
            backup_dir,
            git_repo=settings.backup.git_repo,
        )

    return AutoBackupOutcome.EXPORTED
