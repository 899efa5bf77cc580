"""
Portable JSONL backup for issuevault.

Exports every table of the Dolt database to one JSON-lines file per table
in the backup directory (``.issuevault/backup/`` by default). The files are
plain text, safe to concatenate and meant to be committed to git, so a
project can be rebuilt from them after losing the server's data.

Backup Structure:
    backup/
        issues.jsonl          full export, every run
        labels.jsonl          full export, every run
        dependencies.jsonl    full export, every run
        comments.jsonl        full export, every run
        config.jsonl          full export, every run
        events.jsonl          append-only, new events since the watermark
        backup_state.json     last run: timestamp, watermark, commit, counts

Events are the only table expected to grow without bound, so they are
exported incrementally: rows whose id is above the recorded watermark are
appended. A watermark above the newest event id in the store means the ids
restarted, and events.jsonl is rewritten from scratch. Every file, including backup_state.json, is replaced atomically.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from issuevault.storage.files import (
    atomic_append_jsonl,
    atomic_write_json,
    atomic_write_jsonl,
    read_json,
)
from issuevault.storage.models import format_timestamp, parse_timestamp
from issuevault.storage.target_store import TargetStore, TargetStoreError

logger = logging.getLogger(__name__)

STATE_FILE = "backup_state.json"
EVENTS_FILE = "events.jsonl"

# file stem -> (table, sort columns); exported in full on every run
FULL_EXPORT_TABLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "issues": ("issues", ("created_at", "id")),
    "labels": ("labels", ("issue_id", "label")),
    "dependencies": ("dependencies", ("issue_id", "depends_on_id")),
    "comments": ("comments", ("id",)),
    "config": ("config", ("key",)),
}


class BackupError(Exception):
    """Error during backup operation."""

    pass


class RestoreError(Exception):
    """Error during restore operation."""

    pass


class BackupStatus(str, Enum):
    EXPORTED = "exported"
    UNCHANGED = "unchanged"


@dataclass
class BackupCounts:
    """Row counts per exported table."""

    issues: int = 0
    events: int = 0
    comments: int = 0
    dependencies: int = 0
    labels: int = 0
    config: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupCounts:
        return cls(**{name: int(data.get(name, 0) or 0) for name in cls.__dataclass_fields__})


@dataclass
class BackupState:
    """Outcome of the last successful export."""

    last_target_commit: str = ""
    last_event_id: int = 0
    timestamp: datetime | None = None
    counts: BackupCounts = field(default_factory=BackupCounts)

    @property
    def has_run(self) -> bool:
        return self.timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_target_commit": self.last_target_commit,
            "last_event_id": self.last_event_id,
            "timestamp": format_timestamp(self.timestamp),
            "counts": self.counts.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupState:
        return cls(
            last_target_commit=str(data.get("last_target_commit") or ""),
            last_event_id=int(data.get("last_event_id") or 0),
            timestamp=parse_timestamp(data.get("timestamp")),
            counts=BackupCounts.from_dict(data.get("counts") or {}),
        )


@dataclass
class BackupResult:
    """Result of a backup export."""

    status: BackupStatus
    state: BackupState
    path: Path | None = None
    events_appended: int = 0


def load_backup_state(backup_dir: Path) -> BackupState:
    """
    Load the backup state.

    Returns:
        The recorded state, or an empty state if no backup has run.

    Raises:
        BackupError: If the state file exists but is unreadable.
    """
    path = Path(backup_dir) / STATE_FILE
    if not path.exists():
        return BackupState()
    try:
        data = read_json(path)
        if not isinstance(data, dict):
            raise ValueError("state is not a JSON object")
        return BackupState.from_dict(data)
    except (OSError, ValueError, TypeError) as e:
        raise BackupError(f"Cannot read backup state {path}: {e}") from e


def save_backup_state(backup_dir: Path, state: BackupState) -> None:
    """Write the backup state atomically."""
    atomic_write_json(Path(backup_dir) / STATE_FILE, state.to_dict())


def normalize_value(value: Any) -> Any:
    """
    Convert a database value into something JSON can carry.

    Bytes become text, datetimes become RFC 3339 UTC strings (the zero time
    becomes null), decimals become numbers.
    """
    if isinstance(value, bytes | bytearray):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        if value.year <= 1:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    return {key: normalize_value(value) for key, value in row.items()}


class BackupManager:
    """
    Exports the target store to the portable backup directory.

    Usage:
        manager = BackupManager(store, project_dir / "backup")
        result = manager.export()
        if result.status is BackupStatus.UNCHANGED:
            print("nothing changed since", result.state.timestamp)
    """

    def __init__(
        self,
        store: TargetStore,
        backup_dir: Path,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize backup manager.

        Args:
            store: Open target store to export from.
            backup_dir: Directory holding the JSONL files.
            clock: Source of the current time.
        """
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.clock = clock or (lambda: datetime.now(UTC))

    def export(self, force: bool = False) -> BackupResult:
        """
        Export all tables.

        Args:
            force: Export even if the target's commit has not moved since
                   the last export.

        Returns:
            BackupResult; UNCHANGED when skipped because nothing changed.

        Raises:
            BackupError: If reading the store or writing files fails.
        """
        if self.store is None or self.store.closed:
            raise BackupError("Target store is not open")

        previous = load_backup_state(self.backup_dir)

        try:
            commit = self.store.current_commit()
        except TargetStoreError as e:
            raise BackupError(f"Cannot read current commit: {e}") from e

        if not force and previous.last_target_commit and commit == previous.last_target_commit:
            logger.info(f"No changes since last backup (commit {commit[:12]}), skipping")
            return BackupResult(status=BackupStatus.UNCHANGED, state=previous, path=self.backup_dir)

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            counts = BackupCounts()

            for stem, (table, order_by) in FULL_EXPORT_TABLES.items():
                rows = [normalize_row(row) for row in self.store.fetch_table(table, order_by)]
                atomic_write_jsonl(self.backup_dir / f"{stem}.jsonl", rows)
                setattr(counts, stem, len(rows))
                logger.debug(f"Exported {len(rows)} rows from {table}")

            watermark = previous.last_event_id
            events_count = previous.counts.events
            events_path = self.backup_dir / EVENTS_FILE
            rewrite_events = False
            if watermark and not events_path.exists():
                logger.warning(f"{EVENTS_FILE} is missing, re-exporting all events")
                rewrite_events = True
            elif watermark:
                newest = self.store.max_id("events")
                if watermark > newest:
                    # Event ids restarted, e.g. the database was rebuilt from an older copy
                    logger.warning(
                        f"Event watermark {watermark} is ahead of the newest event id {newest}, "
                        f"rewriting {EVENTS_FILE}"
                    )
                    rewrite_events = True
            if rewrite_events:
                watermark = 0
                events_count = 0

            new_events = self.store.fetch_table("events", ("id",), after_id=watermark)
            event_rows = [normalize_row(row) for row in new_events]
            if rewrite_events:
                atomic_write_jsonl(events_path, event_rows)
            elif new_events or not events_path.exists():
                atomic_append_jsonl(events_path, event_rows)
            if new_events:
                watermark = max(int(row["id"]) for row in new_events)
            counts.events = events_count + len(new_events)

        except TargetStoreError as e:
            raise BackupError(f"Backup export failed: {e}") from e
        except OSError as e:
            raise BackupError(f"Cannot write backup files in {self.backup_dir}: {e}") from e

        state = BackupState(
            last_target_commit=commit,
            last_event_id=watermark,
            timestamp=self.clock(),
            counts=counts,
        )
        try:
            save_backup_state(self.backup_dir, state)
        except OSError as e:
            raise BackupError(f"Cannot write {STATE_FILE}: {e}") from e

        logger.info(
            f"Backup complete: {counts.issues} issues, {counts.events} events "
            f"({len(new_events)} new), {counts.comments} comments, "
            f"{counts.dependencies} deps, {counts.labels} labels, {counts.config} config"
        )
        return BackupResult(
            status=BackupStatus.EXPORTED,
            state=state,
            path=self.backup_dir,
            events_appended=len(new_events),
        )


def backup_status(backup_dir: Path) -> BackupState:
    """Return the recorded state of the last export, for reporting."""
    return load_backup_state(backup_dir)
