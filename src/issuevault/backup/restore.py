"""
Restore the target database from a portable backup directory.

Tables are restored in dependency order: config, issues, comments,
dependencies, labels, events. Rows go in with ``INSERT IGNORE`` so
restoring into a database that already holds some of them keeps the
existing rows. Only rows actually written are counted; rows that were
already present are tallied separately as existing. Lines that cannot be
parsed and rows the server rejects are counted as warnings rather than
aborting the restore.

After writing, the restore records ``last_import_time`` for the freshness
check, commits, and copies the backup's ``backup_state.json`` next to the
project's own backups so the next incremental export continues from the
restored watermark.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from issuevault.backup.freshness import LAST_IMPORT_TIME_KEY, format_import_time
from issuevault.backup.manager import STATE_FILE, RestoreError
from issuevault.migration.importer import issue_params
from issuevault.storage.files import read_jsonl
from issuevault.storage.models import (
    COMMENT_COLUMNS,
    DEPENDENCY_COLUMNS,
    EVENT_COLUMNS,
    Record,
    coerce_row,
)
from issuevault.storage.target_store import (
    ISSUE_TABLE_COLUMNS,
    TargetStore,
    TargetStoreError,
    db_timestamp,
)

logger = logging.getLogger(__name__)

RESTORE_COMMIT_MESSAGE = "backup restore"


def _insert_ignore_sql(table: str, columns: tuple[str, ...]) -> str:
    names = ", ".join(f"`{c}`" for c in columns)
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT IGNORE INTO `{table}` ({names}) VALUES ({placeholders})"


_COLUMNS_BY_TABLE: dict[str, tuple[tuple[str, str, Any], ...]] = {
    "dependencies": DEPENDENCY_COLUMNS,
    "events": EVENT_COLUMNS,
    "comments": COMMENT_COLUMNS,
}

# events and comments keep their ids so the export watermark stays valid
_KEEPS_ID = {"events", "comments"}


@dataclass
class RestoreResult:
    """Rows restored per table."""

    issues: int = 0
    comments: int = 0
    dependencies: int = 0
    labels: int = 0
    events: int = 0
    config: int = 0
    existing: int = 0
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _related_params(table: str, row: dict[str, Any]) -> tuple[tuple[str, ...], tuple[Any, ...]]:
    coerced = coerce_row(row, _COLUMNS_BY_TABLE[table])
    columns = tuple(coerced)
    values = tuple(
        db_timestamp(v) if isinstance(v, datetime) else v for v in coerced.values()
    )
    if table in _KEEPS_ID and row.get("id") is not None:
        columns = ("id",) + columns
        values = (int(row["id"]),) + values
    return columns, values


class _Restorer:
    def __init__(self, store: TargetStore, backup_dir: Path, dry_run: bool) -> None:
        self.store = store
        self.backup_dir = backup_dir
        self.dry_run = dry_run
        self.result = RestoreResult(dry_run=dry_run)

    def _rows(self, stem: str):
        path = self.backup_dir / f"{stem}.jsonl"
        if not path.exists():
            return
        for line_number, row, error in read_jsonl(path):
            if error is not None:
                self.result.warn(f"Skipping invalid line {line_number} in {path.name}: {error}")
                continue
            yield row

    def _insert(self, sql: str, params: tuple[Any, ...], description: str) -> bool:
        if self.dry_run:
            return True
        try:
            affected = self.store.execute(sql, params)
        except TargetStoreError as e:
            self.result.warn(f"Failed to restore {description}: {e}")
            return False
        if not affected:
            self.result.existing += 1
            return False
        return True

    def restore_config(self) -> None:
        for row in self._rows("config"):
            key = row.get("key")
            if not key:
                self.result.warn("Skipping config row without a key")
                continue
            value = "" if row.get("value") is None else str(row["value"])
            if not self.dry_run:
                try:
                    self.store.set_config(str(key), value)
                except TargetStoreError as e:
                    self.result.warn(f"Failed to restore config {key!r}: {e}")
                    continue
            self.result.config += 1

    def restore_issues(self) -> str | None:
        sql = _insert_ignore_sql("issues", ISSUE_TABLE_COLUMNS)
        first_id = None
        for row in self._rows("issues"):
            try:
                record = Record.from_row(row)
            except (ValueError, TypeError) as e:
                self.result.warn(f"Skipping invalid issue row: {e}")
                continue
            if self._insert(sql, issue_params(record), f"issue {record.id}"):
                self.result.issues += 1
                if first_id is None:
                    first_id = record.id
        return first_id

    def restore_related(self, table: str) -> None:
        for row in self._rows(table):
            try:
                columns, values = _related_params(table, row)
            except (ValueError, TypeError) as e:
                self.result.warn(f"Skipping invalid {table} row: {e}")
                continue
            sql = _insert_ignore_sql(table, columns)
            if self._insert(sql, values, f"{table} row for {row.get('issue_id')}"):
                setattr(self.result, table, getattr(self.result, table) + 1)

    def restore_labels(self) -> None:
        sql = _insert_ignore_sql("labels", ("issue_id", "label"))
        for row in self._rows("labels"):
            issue_id, label = row.get("issue_id"), row.get("label")
            if not issue_id or not label:
                self.result.warn("Skipping label row without issue_id or label")
                continue
            if self._insert(sql, (str(issue_id), str(label)), f"label {label!r} for {issue_id}"):
                self.result.labels += 1


def restore_backup(
    store: TargetStore,
    backup_dir: Path,
    dry_run: bool = False,
    state_dir: Path | None = None,
    clock: Callable[[], datetime] | None = None,
) -> RestoreResult:
    """
    Restore a portable backup into the target store.

    Args:
        store: Open target store with the schema in place.
        backup_dir: Directory holding the JSONL files.
        dry_run: Count rows without writing anything.
        state_dir: The project's backup directory; backup_state.json is
                   copied there when it differs from backup_dir.
        clock: Source of the recorded import time.

    Returns:
        RestoreResult with per-table counts and warnings.

    Raises:
        RestoreError: If the directory is not a backup or the store cannot
                      be written.
    """
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        raise RestoreError(
            f"Backup directory not found: {backup_dir}. Run 'issuevault backup' first."
        )
    if not (backup_dir / "issues.jsonl").exists():
        raise RestoreError(f"No issues.jsonl found in {backup_dir}; not a backup directory")
    if not dry_run and (store is None or store.closed):
        raise RestoreError("Target store is not open")

    clock = clock or (lambda: datetime.now(UTC))
    restorer = _Restorer(store, backup_dir, dry_run)

    restorer.restore_config()
    first_id = restorer.restore_issues()
    restorer.restore_related("comments")
    restorer.restore_related("dependencies")
    restorer.restore_labels()
    restorer.restore_related("events")
    result = restorer.result

    if dry_run:
        return result

    try:
        if first_id and "-" in first_id and not store.get_config("issue_prefix"):
            store.set_config("issue_prefix", first_id.rsplit("-", 1)[0])
        store.set_metadata(LAST_IMPORT_TIME_KEY, format_import_time(clock()))
        store.commit(RESTORE_COMMIT_MESSAGE)
    except TargetStoreError as e:
        raise RestoreError(f"Failed to finalize restore: {e}") from e

    source_state = backup_dir / STATE_FILE
    if state_dir is not None and source_state.exists():
        target_state = Path(state_dir) / STATE_FILE
        if source_state.resolve() != target_state.resolve():
            try:
                Path(state_dir).mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source_state, target_state)
            except OSError as e:
                result.warn(f"Could not copy {STATE_FILE} to {state_dir}: {e}")

    logger.info(
        f"Restored {result.issues} issues, {result.comments} comments, "
        f"{result.dependencies} dependencies, {result.labels} labels, "
        f"{result.events} events, {result.config} config entries, "
        f"{result.existing} rows already present"
    )
    return result
