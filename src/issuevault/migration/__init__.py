"""
SQLite to Dolt migration for issuevault.

Usage:
    from issuevault.migration import MigrationCommitter

    result = MigrationCommitter(project_dir, password=password).run()
    print(result.status, result.database_name)

The committer extracts the legacy store, backs it up, checks the target
server, imports, verifies row counts and only then switches metadata.json to
the target backend and retires the legacy file. See committer.py for the
step order and failure handling.
"""

from issuevault.migration.committer import (
    MAX_BACKUP_ATTEMPTS,
    MigrationCommitter,
    MigrationResult,
    MigrationRun,
    MigrationStatus,
    backup_legacy_file,
    verify_migration_counts,
    verify_table_counts,
)
from issuevault.migration.errors import (
    BackupCollisionError,
    CorruptLegacyStoreError,
    ExtractionError,
    MigrationError,
    MigrationFinalizeError,
    MigrationVerificationError,
    RollbackError,
    TargetVerificationError,
)
from issuevault.migration.extract import (
    LegacyExtractor,
    SQLiteCLIExtractor,
    SQLiteDriverExtractor,
    select_extractor,
)
from issuevault.migration.rollback import capture_metadata, rollback_metadata
from issuevault.migration.target_check import verify_server_target

__all__ = [
    # Committer
    "MigrationCommitter",
    "MigrationResult",
    "MigrationRun",
    "MigrationStatus",
    "MAX_BACKUP_ATTEMPTS",
    "backup_legacy_file",
    "verify_migration_counts",
    "verify_table_counts",
    # Extraction
    "LegacyExtractor",
    "SQLiteDriverExtractor",
    "SQLiteCLIExtractor",
    "select_extractor",
    # Verification and rollback
    "verify_server_target",
    "capture_metadata",
    "rollback_metadata",
    # Errors
    "MigrationError",
    "ExtractionError",
    "CorruptLegacyStoreError",
    "TargetVerificationError",
    "BackupCollisionError",
    "MigrationVerificationError",
    "MigrationFinalizeError",
    "RollbackError",
]
