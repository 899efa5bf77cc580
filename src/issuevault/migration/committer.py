"""
Migration committer.

Moves a project from the legacy SQLite file to the Dolt server, exactly once.
A run goes through these steps in order:

    detect       already retired? then nothing to do
    extract      read the legacy file into a Snapshot (read-only)
    backup       copy the legacy file aside, never overwriting a copy
    verify       check the target server is safe to write to
    capture      keep metadata.json bytes for rollback, mark it pending
    import       create database and schema, write the snapshot, commit
    counts       every target table holds at least the source row count
    finalize     switch metadata.json to the target backend, retire the file

Saving metadata.json with the target backend is the point of no return. Any
failure before it restores the captured metadata. After it, writing
``sync.mode`` to config.yaml is best-effort, and the rename that retires the
legacy file is the last action. If that rename fails, the next run sees
metadata already naming the target and only completes the rename; it never
re-imports the legacy data over the live target.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from issuevault.best_effort import run_best_effort
from issuevault.config.metadata import (
    BACKEND_DOLT,
    DEFAULT_SERVER_PORT,
    ProjectMetadata,
    load_metadata,
    save_metadata,
)
from issuevault.config.settings import SYNC_MODE_NATIVE, get_config_path, set_config_value
from issuevault.migration.errors import (
    BackupCollisionError,
    MigrationError,
    MigrationFinalizeError,
    MigrationVerificationError,
    RollbackError,
)
from issuevault.migration.extract import (
    MIGRATED_SUFFIX,
    LegacyExtractor,
    find_legacy_database,
    migrated_marker_path,
    select_extractor,
)
from issuevault.migration.importer import ImportResult, import_snapshot
from issuevault.migration.rollback import MetadataSnapshot, capture_metadata, rollback_metadata
from issuevault.migration.target_check import TargetCheckResult, verify_server_target
from issuevault.storage.models import Snapshot
from issuevault.storage.target_store import TargetConfig, TargetStore

logger = logging.getLogger(__name__)

# Base name plus numbered suffixes -1 .. -99 for one timestamp
MAX_BACKUP_ATTEMPTS = 100
BACKUP_MARKER = "backup-pre-target"
DEFAULT_DATABASE_NAME = "issues"


class MigrationStatus(str, Enum):
    """How a migration run ended when it did not raise."""

    MIGRATED = "migrated"
    ALREADY_MIGRATED = "already_migrated"
    RETIREMENT_COMPLETED = "retirement_completed"
    NO_LEGACY_STORE = "no_legacy_store"
    DRY_RUN = "dry_run"


class MigrationStep(str, Enum):
    DETECT = "detect"
    EXTRACT = "extract"
    BACKUP = "backup"
    VERIFY_TARGET = "verify_target"
    CAPTURE = "capture"
    IMPORT = "import"
    VERIFY_COUNTS = "verify_counts"
    FINALIZE = "finalize"
    RETIRE = "retire"
    DONE = "done"


@dataclass
class MigrationRun:
    """
    Process-local state of one migration run.

    Never persisted; only its effects (metadata.json, the renamed legacy
    file) are durable.
    """

    step: MigrationStep = MigrationStep.DETECT
    legacy_path: Path | None = None
    database_name: str = ""
    backup_path: Path | None = None
    captured_metadata: MetadataSnapshot | None = None

    def advance(self, step: MigrationStep) -> None:
        logger.debug(f"Migration step: {self.step.value} -> {step.value}")
        self.step = step


@dataclass
class MigrationResult:
    """Outcome of MigrationCommitter.run()."""

    status: MigrationStatus
    legacy_path: Path | None = None
    migrated_path: Path | None = None
    backup_path: Path | None = None
    database_name: str = ""
    source_counts: dict[str, int] = field(default_factory=dict)
    target_counts: dict[str, int] = field(default_factory=dict)
    target_check: TargetCheckResult | None = None
    import_result: ImportResult | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "legacy_path": str(self.legacy_path) if self.legacy_path else None,
            "migrated_path": str(self.migrated_path) if self.migrated_path else None,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "database_name": self.database_name,
            "source_counts": self.source_counts,
            "target_counts": self.target_counts,
            "warnings": self.warnings,
        }


def backup_legacy_file(path: Path, now: datetime | None = None) -> Path:
    """
    Copy the legacy file next to itself before anything is changed.

    The copy is named ``<stem>.backup-pre-target-<YYYYmmdd-HHMMSS><suffix>``.
    Files are created exclusively, so an existing backup is never
    overwritten; on a same-second collision ``-1``, ``-2`` ... are appended.

    Raises:
        BackupCollisionError: If MAX_BACKUP_ATTEMPTS names are all taken.
        MigrationError: If the copy fails.
    """
    path = Path(path)
    timestamp = (now or datetime.now(UTC)).strftime("%Y%m%d-%H%M%S")

    for attempt in range(MAX_BACKUP_ATTEMPTS):
        counter = f"-{attempt}" if attempt else ""
        candidate = path.with_name(f"{path.stem}.{BACKUP_MARKER}-{timestamp}{counter}{path.suffix}")
        try:
            fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            continue
        except OSError as e:
            raise MigrationError(f"Cannot create backup file {candidate}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as dst, open(path, "rb") as src:
                shutil.copyfileobj(src, dst)
                dst.flush()
                os.fsync(dst.fileno())
        except OSError as e:
            candidate.unlink(missing_ok=True)
            raise MigrationError(f"Failed to copy {path} to {candidate}: {e}") from e

        logger.info(f"Backed up legacy database to {candidate.name}")
        return candidate

    raise BackupCollisionError(
        f"Too many backup files for timestamp {timestamp}: "
        f"all {MAX_BACKUP_ATTEMPTS} names are taken"
    )


def verify_table_counts(source: dict[str, int], target: dict[str, int]) -> None:
    """
    Check every target table holds at least as many rows as the source.

    Targets may hold more (a shared server can already contain data), never
    fewer.

    Raises:
        MigrationVerificationError: Listing every table that fell short.
    """
    shortfalls = [
        f"{table}: source has {count}, target has {target.get(table, 0)}"
        for table, count in source.items()
        if target.get(table, 0) < count
    ]
    if shortfalls:
        raise MigrationVerificationError(
            "Migration verification failed: " + "; ".join(shortfalls)
        )


def verify_migration_counts(
    source_issues: int,
    source_deps: int,
    target_issues: int,
    target_deps: int,
) -> None:
    """Issue and dependency form of verify_table_counts()."""
    verify_table_counts(
        {"issues": source_issues, "dependencies": source_deps},
        {"issues": target_issues, "dependencies": target_deps},
    )


def spot_check_records(store: TargetStore, snapshot: Snapshot) -> None:
    """
    Confirm the first and last source records landed with their titles.

    Raises:
        MigrationVerificationError: If a record is missing or its title differs.
    """
    if not snapshot.records:
        return
    samples = [snapshot.records[0]]
    if len(snapshot.records) > 1:
        samples.append(snapshot.records[-1])

    for record in samples:
        rows = store.query("SELECT title FROM issues WHERE id = %s", (record.id,))
        if not rows:
            raise MigrationVerificationError(f"Spot check failed: issue {record.id} missing from target")
        if str(rows[0]["title"]) != record.title:
            raise MigrationVerificationError(
                f"Spot check failed: issue {record.id} title mismatch "
                f"(source {record.title!r}, target {rows[0]['title']!r})"
            )


def resolve_database_name(metadata: ProjectMetadata, snapshot: Snapshot) -> str:
    """Existing target database name, else the sanitized issue prefix, else 'issues'."""
    if metadata.target_database:
        return metadata.target_database
    name = re.sub(r"[^A-Za-z0-9_]", "_", snapshot.prefix).strip("_")
    return name or DEFAULT_DATABASE_NAME


def retire_legacy_file(legacy_path: Path) -> Path:
    """
    Rename the legacy file with the migrated marker.

    Raises:
        MigrationFinalizeError: If the rename fails.
    """
    marker = migrated_marker_path(legacy_path)
    try:
        os.replace(legacy_path, marker)
    except OSError as e:
        raise MigrationFinalizeError(
            f"Metadata now points at the Dolt server, but {legacy_path.name} could not be "
            f"renamed to {marker.name}: {e}. Run 'issuevault migrate' again to finish."
        ) from e
    logger.info(f"Retired legacy database: {legacy_path.name} -> {marker.name}")
    return marker


class MigrationCommitter:
    """
    Runs a migration with explicit collaborators.

    Every dependency (extractor, target store factory, target verifier,
    importer, clock) is passed in, so tests can drive a full run without a
    server.
    """

    def __init__(
        self,
        project_dir: Path,
        extractor: LegacyExtractor | None = None,
        store_factory: Callable[[TargetConfig], TargetStore] = TargetStore,
        target_verifier: Callable[..., TargetCheckResult] = verify_server_target,
        importer: Callable[[TargetStore, Snapshot], ImportResult] = import_snapshot,
        password: str = "",
        config_path: Path | None = None,
        legacy_path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.extractor = extractor
        self.store_factory = store_factory
        self.target_verifier = target_verifier
        self.importer = importer
        self.password = password
        self.config_path = config_path or get_config_path(self.project_dir)
        self.legacy_path = Path(legacy_path) if legacy_path else None
        self.clock = clock or (lambda: datetime.now(UTC))

    def run(self, dry_run: bool = False) -> MigrationResult:
        """
        Migrate the project.

        Args:
            dry_run: Stop after extraction and report what would be migrated.

        Returns:
            MigrationResult; idempotent no-ops are statuses, not errors.

        Raises:
            MigrationError: On any failure. Failures after metadata capture
                            and before the switch restore the metadata first.
        """
        run = MigrationRun()

        legacy = self.legacy_path or find_legacy_database(self.project_dir)
        if legacy is None or migrated_marker_path(legacy).exists():
            retired = sorted(self.project_dir.glob(f"*.db{MIGRATED_SUFFIX}"))
            if retired or (legacy is not None and migrated_marker_path(legacy).exists()):
                logger.info("Legacy database already migrated, nothing to do")
                return MigrationResult(status=MigrationStatus.ALREADY_MIGRATED, legacy_path=legacy)
            logger.info(f"No legacy database found in {self.project_dir}")
            return MigrationResult(status=MigrationStatus.NO_LEGACY_STORE)
        run.legacy_path = legacy

        metadata = load_metadata(self.project_dir)
        if metadata.is_target_backend and metadata.pending_migration is None:
            # Switched to the target on an earlier run whose final rename failed
            run.advance(MigrationStep.RETIRE)
            migrated_path = retire_legacy_file(legacy)
            return MigrationResult(
                status=MigrationStatus.RETIREMENT_COMPLETED,
                legacy_path=legacy,
                migrated_path=migrated_path,
                database_name=metadata.target_database,
            )

        run.advance(MigrationStep.EXTRACT)
        extractor = self.extractor or select_extractor()
        snapshot = extractor.extract(legacy)
        if snapshot.is_empty():
            logger.warning(f"{legacy.name} holds no issues or config; the target database will be empty")
        source_counts = snapshot.table_counts()
        run.database_name = resolve_database_name(metadata, snapshot)

        if dry_run:
            return MigrationResult(
                status=MigrationStatus.DRY_RUN,
                legacy_path=legacy,
                database_name=run.database_name,
                source_counts=source_counts,
            )

        run.advance(MigrationStep.BACKUP)
        run.backup_path = backup_legacy_file(legacy, self.clock())

        run.advance(MigrationStep.VERIFY_TARGET)
        port = metadata.effective_port() or DEFAULT_SERVER_PORT
        target_check = self.target_verifier(
            run.database_name,
            port,
            host=metadata.server_host,
            user=metadata.server_user,
            password=self.password,
        )

        run.advance(MigrationStep.CAPTURE)
        run.captured_metadata = capture_metadata(self.project_dir)

        try:
            metadata.pending_migration = {
                "database": run.database_name,
                "legacy_path": legacy.name,
                "backup_path": run.backup_path.name,
                "started_at": self.clock().isoformat(),
            }
            save_metadata(self.project_dir, metadata)

            run.advance(MigrationStep.IMPORT)
            store = self.store_factory(
                TargetConfig(
                    host=metadata.server_host,
                    port=port,
                    user=metadata.server_user,
                    password=self.password,
                    database=run.database_name,
                    tls=metadata.server_tls,
                )
            )
            try:
                store.open(create=True)
                store.ensure_schema()
                import_result = self.importer(store, snapshot)
                warnings = list(import_result.warnings)
                for outcome in (
                    run_best_effort(
                        "Recording sync mode in target config",
                        store.set_config,
                        "sync.mode",
                        SYNC_MODE_NATIVE,
                    ),
                    run_best_effort(
                        "Committing migrated data",
                        store.commit,
                        f"issuevault: migrate {snapshot.record_count} issues from {legacy.name}",
                    ),
                ):
                    if outcome.warning:
                        warnings.append(outcome.warning)

                run.advance(MigrationStep.VERIFY_COUNTS)
                target_counts = {table: store.count_rows(table) for table in source_counts}
                verify_table_counts(source_counts, target_counts)
                spot_check_records(store, snapshot)
            finally:
                store.close()

            run.advance(MigrationStep.FINALIZE)
            metadata.backend = BACKEND_DOLT
            metadata.database = BACKEND_DOLT
            metadata.target_database = run.database_name
            if not metadata.server_port:
                metadata.server_port = port
            metadata.pending_migration = None
            save_metadata(self.project_dir, metadata)
        except Exception as e:
            logger.error(f"Migration failed during {run.step.value}: {e}")
            self._rollback(run, e)
            raise

        # Past the point of no return: metadata names the target backend
        outcome = run_best_effort(
            "Writing sync.mode to config.yaml",
            set_config_value,
            self.config_path,
            "sync.mode",
            SYNC_MODE_NATIVE,
        )
        if outcome.warning:
            warnings.append(outcome.warning)

        run.advance(MigrationStep.RETIRE)
        migrated_path = retire_legacy_file(legacy)
        run.advance(MigrationStep.DONE)

        return MigrationResult(
            status=MigrationStatus.MIGRATED,
            legacy_path=legacy,
            migrated_path=migrated_path,
            backup_path=run.backup_path,
            database_name=run.database_name,
            source_counts=source_counts,
            target_counts=target_counts,
            target_check=target_check,
            import_result=import_result,
            warnings=warnings,
        )

    def _rollback(self, run: MigrationRun, cause: Exception) -> None:
        try:
            rollback_metadata(self.project_dir, run.captured_metadata)
        except RollbackError as rollback_error:
            raise RollbackError(
                f"{rollback_error} (while handling: {cause})"
            ) from cause
