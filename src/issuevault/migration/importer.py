"""
Snapshot import into the target store.

Writes an extracted Snapshot into the Dolt database in a single transaction.
Issues are upserted; labels, dependencies, events and comments of every
migrated issue are deleted and re-inserted from the snapshot, so importing
the same snapshot twice leaves the target unchanged.

A failing issue row aborts the whole import. Failing related rows (a
dependency that violates a constraint, an oversized comment) are recorded
as warnings and skipped, as are related rows whose issue was not extracted
and repeated dependency rows for the same pair of issues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import mysql.connector

from issuevault.storage.models import Record, Snapshot
from issuevault.storage.target_store import (
    ISSUE_TABLE_COLUMNS,
    TargetStore,
    TargetStoreError,
    db_timestamp,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_COLUMNS = {"created_at", "updated_at", "closed_at", "due_at", "defer_until"}

UPSERT_ISSUE_SQL = (
    f"INSERT INTO issues ({', '.join(ISSUE_TABLE_COLUMNS)}) "
    f"VALUES ({', '.join(['%s'] * len(ISSUE_TABLE_COLUMNS))}) "
    "ON DUPLICATE KEY UPDATE "
    + ", ".join(f"{c} = VALUES({c})" for c in ISSUE_TABLE_COLUMNS if c != "id")
)

INSERT_LABEL_SQL = (
    "INSERT INTO labels (issue_id, label) VALUES (%s, %s) "
    "ON DUPLICATE KEY UPDATE label = VALUES(label)"
)

INSERT_DEPENDENCY_SQL = (
    "INSERT INTO dependencies "
    "(issue_id, depends_on_id, type, created_by, created_at, metadata, thread_id) "
    "VALUES (%s, %s, %s, %s, %s, %s, %s) "
    "ON DUPLICATE KEY UPDATE type = VALUES(type), created_by = VALUES(created_by), "
    "created_at = VALUES(created_at), metadata = VALUES(metadata), thread_id = VALUES(thread_id)"
)

INSERT_EVENT_SQL = (
    "INSERT INTO events (issue_id, event_type, actor, old_value, new_value, comment, created_at) "
    "VALUES (%s, %s, %s, %s, %s, %s, %s)"
)

INSERT_COMMENT_SQL = (
    "INSERT INTO comments (issue_id, author, text, created_at) VALUES (%s, %s, %s, %s)"
)


@dataclass
class ImportResult:
    """Counts from one snapshot import."""

    imported: int = 0
    skipped: int = 0
    labels: int = 0
    dependencies: int = 0
    events: int = 0
    comments: int = 0
    orphaned: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def issue_params(record: Record) -> tuple[Any, ...]:
    """Row values for UPSERT_ISSUE_SQL in column order."""
    values = []
    for column in ISSUE_TABLE_COLUMNS:
        value = getattr(record, column)
        if column == "content_hash" and not value:
            value = record.computed_content_hash()
        elif column in _TIMESTAMP_COLUMNS:
            value = db_timestamp(value)
        elif isinstance(value, bool):
            value = int(value)
        values.append(value)
    return tuple(values)


def import_snapshot(store: TargetStore, snapshot: Snapshot) -> ImportResult:
    """
    Write a snapshot into the target store.

    Args:
        store: Open target store with the schema in place.
        snapshot: Data to write.

    Returns:
        ImportResult with per-table counts and any row warnings.

    Raises:
        TargetStoreError: If the transaction fails or an issue cannot be written.
    """
    result = ImportResult()

    for key, value in sorted(snapshot.config.items()):
        store.set_config(key, value)

    issue_ids: list[str] = []
    seen: set[str] = set()
    with store.transaction() as cursor:
        for record in snapshot.records:
            if record.id in seen:
                result.skipped += 1
                continue
            try:
                cursor.execute(UPSERT_ISSUE_SQL, issue_params(record))
                cursor.execute("DELETE FROM labels WHERE issue_id = %s", (record.id,))
            except mysql.connector.Error as e:
                raise TargetStoreError(f"Failed to write issue {record.id}: {e}") from e
            seen.add(record.id)
            issue_ids.append(record.id)
            result.imported += 1

            for label in snapshot.labels.get(record.id, ()):
                try:
                    cursor.execute(INSERT_LABEL_SQL, (record.id, label))
                    result.labels += 1
                except mysql.connector.Error as e:
                    result.warn(f"Failed to insert label {label!r} for issue {record.id}: {e}")

        # Related rows are source-authoritative for every migrated issue
        for issue_id in issue_ids:
            try:
                cursor.execute("DELETE FROM dependencies WHERE issue_id = %s", (issue_id,))
                cursor.execute("DELETE FROM events WHERE issue_id = %s", (issue_id,))
                cursor.execute("DELETE FROM comments WHERE issue_id = %s", (issue_id,))
            except mysql.connector.Error as e:
                raise TargetStoreError(f"Failed to reset related rows for issue {issue_id}: {e}") from e

        for issue_id in issue_ids:
            deps = snapshot.unique_dependencies(issue_id)
            repeated = len(snapshot.dependencies.get(issue_id, ())) - len(deps)
            if repeated:
                result.warn(
                    f"Skipped {repeated} repeated dependency rows for issue {issue_id}; "
                    "the first row per target is kept"
                )
            for dep in deps:
                try:
                    cursor.execute(
                        INSERT_DEPENDENCY_SQL,
                        (
                            dep.issue_id,
                            dep.depends_on_id,
                            dep.type,
                            dep.created_by,
                            db_timestamp(dep.created_at),
                            dep.metadata or "{}",
                            dep.thread_id,
                        ),
                    )
                    result.dependencies += 1
                except mysql.connector.Error as e:
                    result.warn(
                        f"Failed to insert dependency {dep.issue_id} -> {dep.depends_on_id}: {e}"
                    )

        for issue_id in issue_ids:
            for event in snapshot.events.get(issue_id, ()):
                try:
                    cursor.execute(
                        INSERT_EVENT_SQL,
                        (
                            issue_id,
                            event.event_type,
                            event.actor,
                            event.old_value,
                            event.new_value,
                            event.comment,
                            db_timestamp(event.created_at),
                        ),
                    )
                    result.events += 1
                except mysql.connector.Error as e:
                    result.warn(f"Failed to insert event for issue {issue_id}: {e}")

        for issue_id in issue_ids:
            for comment in snapshot.comments.get(issue_id, ()):
                try:
                    cursor.execute(
                        INSERT_COMMENT_SQL,
                        (issue_id, comment.author, comment.text, db_timestamp(comment.created_at)),
                    )
                    result.comments += 1
                except mysql.connector.Error as e:
                    result.warn(f"Failed to insert comment for issue {issue_id}: {e}")

    for table, count in snapshot.orphan_counts().items():
        result.orphaned[table] = count
        result.warn(f"Skipped {count} {table} rows whose issue is not in the legacy store")

    logger.info(
        f"Imported {result.imported} issues ({result.skipped} duplicates skipped), "
        f"{result.labels} labels, {result.dependencies} dependencies, "
        f"{result.events} events, {result.comments} comments"
    )
    return result
