"""
Backup functionality for issuevault.

Two independent kinds of backup:

- portable: JSONL files per table in ``.issuevault/backup/``, events
  exported incrementally, optionally committed and pushed with git;
- native: the engine's own DOLT_BACKUP to a filesystem path or remote.

Also here: restore from a portable backup and the freshness check that
tells whether a portable export is newer than the last import.
"""

from issuevault.backup.auto import (
    AutoBackupOutcome,
    is_backup_auto_enabled,
    is_backup_git_push_enabled,
    maybe_auto_backup,
)
from issuevault.backup.freshness import (
    FreshnessReport,
    FreshnessStatus,
    StaleDatabaseError,
    check_database_freshness,
    ensure_database_fresh,
)
from issuevault.backup.git import GitBackupError, GitBackupResult, git_backup, has_git_remote
from issuevault.backup.manager import (
    BackupError,
    BackupManager,
    BackupResult,
    BackupState,
    BackupStatus,
    RestoreError,
    backup_status,
    load_backup_state,
)
from issuevault.backup.native import (
    NativeBackupError,
    NativeBackupManager,
    NativeBackupNotConfiguredError,
    resolve_backup_url,
)
from issuevault.backup.restore import RestoreResult, restore_backup

__all__ = [
    # Portable export
    "BackupManager",
    "BackupResult",
    "BackupState",
    "BackupStatus",
    "backup_status",
    "load_backup_state",
    # Automatic backup and git
    "AutoBackupOutcome",
    "maybe_auto_backup",
    "is_backup_auto_enabled",
    "is_backup_git_push_enabled",
    "git_backup",
    "has_git_remote",
    "GitBackupResult",
    # Restore and freshness
    "restore_backup",
    "RestoreResult",
    "check_database_freshness",
    "ensure_database_fresh",
    "FreshnessReport",
    "FreshnessStatus",
    # Native backup
    "NativeBackupManager",
    "resolve_backup_url",
    # Errors
    "BackupError",
    "RestoreError",
    "GitBackupError",
    "StaleDatabaseError",
    "NativeBackupError",
    "NativeBackupNotConfiguredError",
]
