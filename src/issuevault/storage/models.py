"""
Data models for issuevault storage.

These dataclasses describe everything that moves between the legacy SQLite
store, the Dolt target server and the portable JSONL backup: issue records,
dependencies, history events, comments and the immutable Snapshot that the
migration writes in one pass.

Every issue column other than ``id`` may be missing from an older legacy
schema. ISSUE_COLUMNS lists each optional column together with the value it
takes when absent, so both extractors and the restore path fill the same
defaults.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

# Column kinds used to coerce raw rows into Record fields.
TEXT = "text"
INTEGER = "integer"
REAL = "real"
FLAG = "flag"
TIMESTAMP = "timestamp"
JSON_TEXT = "json"

# (column, kind, default when the column is absent or NULL)
ISSUE_COLUMNS: tuple[tuple[str, str, Any], ...] = (
    ("content_hash", TEXT, ""),
    ("title", TEXT, ""),
    ("description", TEXT, ""),
    ("design", TEXT, ""),
    ("acceptance_criteria", TEXT, ""),
    ("notes", TEXT, ""),
    ("status", TEXT, ""),
    ("priority", INTEGER, 0),
    ("issue_type", TEXT, ""),
    ("assignee", TEXT, ""),
    ("estimated_minutes", INTEGER, None),
    ("created_at", TIMESTAMP, None),
    ("created_by", TEXT, ""),
    ("owner", TEXT, ""),
    ("updated_at", TIMESTAMP, None),
    ("closed_at", TIMESTAMP, None),
    ("close_reason", TEXT, ""),
    ("external_ref", TEXT, None),
    ("source_repo", TEXT, ""),
    ("sender", TEXT, ""),
    ("ephemeral", FLAG, False),
    ("pinned", FLAG, False),
    ("is_template", FLAG, False),
    ("quality_score", REAL, None),
    ("due_at", TIMESTAMP, None),
    ("defer_until", TIMESTAMP, None),
    ("metadata", JSON_TEXT, "{}"),
)

DEPENDENCY_COLUMNS: tuple[tuple[str, str, Any], ...] = (
    ("issue_id", TEXT, ""),
    ("depends_on_id", TEXT, ""),
    ("type", TEXT, ""),
    ("created_by", TEXT, ""),
    ("created_at", TIMESTAMP, None),
    ("metadata", JSON_TEXT, "{}"),
    ("thread_id", TEXT, ""),
)

EVENT_COLUMNS: tuple[tuple[str, str, Any], ...] = (
    ("issue_id", TEXT, ""),
    ("event_type", TEXT, ""),
    ("actor", TEXT, ""),
    ("old_value", TEXT, None),
    ("new_value", TEXT, None),
    ("comment", TEXT, None),
    ("created_at", TIMESTAMP, None),
)

COMMENT_COLUMNS: tuple[tuple[str, str, Any], ...] = (
    ("issue_id", TEXT, ""),
    ("author", TEXT, ""),
    ("text", TEXT, ""),
    ("created_at", TIMESTAMP, None),
)

# Fields hashed when a record arrives without a content hash.
CONTENT_HASH_FIELDS = (
    "title",
    "description",
    "design",
    "acceptance_criteria",
    "notes",
    "status",
    "priority",
    "issue_type",
    "assignee",
    "external_ref",
)

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored timestamp into a timezone-aware UTC datetime.

    Accepts RFC 3339 with up to nanosecond precision, plain RFC 3339, the
    SQLite ``YYYY-MM-DD HH:MM:SS`` form and a trailing ``Z``. Naive values
    are taken to be UTC.

    Args:
        value: A string, datetime or None.

    Returns:
        The parsed datetime, or None for empty or unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.decode() if isinstance(value, bytes) else str(value)
        text = text.strip()
        if not text or text.startswith("0001-01-01"):
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # datetime only keeps microseconds
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime as RFC 3339 in UTC, or None."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _coerce(kind: str, value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if kind == TEXT:
        return str(value)
    if kind == INTEGER:
        if value == "":
            return default
        return int(value)
    if kind == REAL:
        if value == "":
            return default
        return float(value)
    if kind == FLAG:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "t", "yes")
        return bool(value)
    if kind == TIMESTAMP:
        return parse_timestamp(value)
    if kind == JSON_TEXT:
        text = str(value).strip()
        return text or default
    raise ValueError(f"Unknown column kind: {kind}")


def coerce_row(row: dict[str, Any], columns: tuple[tuple[str, str, Any], ...]) -> dict[str, Any]:
    """Apply documented defaults and type coercion to a raw row."""
    return {name: _coerce(kind, row.get(name), default) for name, kind, default in columns}


@dataclass(frozen=True)
class Record:
    """A single issue as stored by the tracker."""

    id: str
    content_hash: str = ""
    title: str = ""
    description: str = ""
    design: str = ""
    acceptance_criteria: str = ""
    notes: str = ""
    status: str = ""
    priority: int = 0
    issue_type: str = ""
    assignee: str = ""
    estimated_minutes: int | None = None
    created_at: datetime | None = None
    created_by: str = ""
    owner: str = ""
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str = ""
    external_ref: str | None = None
    source_repo: str = ""
    sender: str = ""
    ephemeral: bool = False
    pinned: bool = False
    is_template: bool = False
    quality_score: float | None = None
    due_at: datetime | None = None
    defer_until: datetime | None = None
    metadata: str = "{}"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Record:
        """Build a record from a raw row, filling absent columns with defaults."""
        record_id = row.get("id")
        if record_id is None or str(record_id) == "":
            raise ValueError("Issue row without an id")
        return cls(id=str(record_id), **coerce_row(row, ISSUE_COLUMNS))

    def to_dict(self) -> dict[str, Any]:
        """Convert record to a dictionary."""
        return asdict(self)

    def computed_content_hash(self) -> str:
        """SHA-256 over the content fields, used when none was stored."""
        digest = hashlib.sha256()
        for name in CONTENT_HASH_FIELDS:
            value = getattr(self, name)
            digest.update(("" if value is None else str(value)).encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()


@dataclass(frozen=True)
class Dependency:
    """A typed edge from one issue to another."""

    issue_id: str
    depends_on_id: str
    type: str = ""
    created_by: str = ""
    created_at: datetime | None = None
    metadata: str = "{}"
    thread_id: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Dependency:
        return cls(**coerce_row(row, DEPENDENCY_COLUMNS))


@dataclass(frozen=True)
class Event:
    """A history event recorded against an issue."""

    issue_id: str
    event_type: str = ""
    actor: str = ""
    old_value: str | None = None
    new_value: str | None = None
    comment: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Event:
        return cls(**coerce_row(row, EVENT_COLUMNS))


@dataclass(frozen=True)
class Comment:
    """A free-form comment on an issue."""

    issue_id: str
    author: str = ""
    text: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Comment:
        return cls(**coerce_row(row, COMMENT_COLUMNS))


def derive_prefix(config: dict[str, str], records: tuple[Record, ...]) -> str:
    """
    Derive the issue id prefix.

    The ``issue_prefix`` config value wins; otherwise the part of the first
    record id before its last dash is used.
    """
    prefix = config.get("issue_prefix", "").strip()
    if prefix:
        return prefix
    if records:
        first_id = records[0].id
        if "-" in first_id:
            return first_id.rsplit("-", 1)[0]
    return ""


@dataclass(frozen=True, eq=True)
class Snapshot:
    """
    Immutable, deterministically ordered copy of a legacy store.

    Records are ordered by creation time then id. Per-record collections are
    ordered by creation time then insertion order, so two extractions of the
    same file compare equal.
    """

    records: tuple[Record, ...] = ()
    labels: dict[str, tuple[str, ...]] = field(default_factory=dict)
    dependencies: dict[str, tuple[Dependency, ...]] = field(default_factory=dict)
    events: dict[str, tuple[Event, ...]] = field(default_factory=dict)
    comments: dict[str, tuple[Comment, ...]] = field(default_factory=dict)
    config: dict[str, str] = field(default_factory=dict)
    prefix: str = ""

    @classmethod
    def build(
        cls,
        records: list[Record],
        labels: list[tuple[str, str]],
        dependencies: list[Dependency],
        events: list[Event],
        comments: list[Comment],
        config: dict[str, str],
    ) -> Snapshot:
        """
        Assemble a snapshot from rows already in extraction order.

        Labels are de-duplicated and sorted per record; the other
        collections keep the order they were given in.
        """
        label_map: dict[str, set[str]] = {}
        for issue_id, label in labels:
            label_map.setdefault(issue_id, set()).add(label)

        deps: dict[str, list[Dependency]] = {}
        for dep in dependencies:
            deps.setdefault(dep.issue_id, []).append(dep)

        event_map: dict[str, list[Event]] = {}
        for event in events:
            event_map.setdefault(event.issue_id, []).append(event)

        comment_map: dict[str, list[Comment]] = {}
        for comment in comments:
            comment_map.setdefault(comment.issue_id, []).append(comment)

        record_tuple = tuple(records)
        return cls(
            records=record_tuple,
            labels={k: tuple(sorted(v)) for k, v in label_map.items()},
            dependencies={k: tuple(v) for k, v in deps.items()},
            events={k: tuple(v) for k, v in event_map.items()},
            comments={k: tuple(v) for k, v in comment_map.items()},
            config=dict(config),
            prefix=derive_prefix(config, record_tuple),
        )

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def label_count(self) -> int:
        return sum(len(v) for v in self.labels.values())

    @property
    def dependency_count(self) -> int:
        return sum(len(v) for v in self.dependencies.values())

    @property
    def event_count(self) -> int:
        return sum(len(v) for v in self.events.values())

    @property
    def comment_count(self) -> int:
        return sum(len(v) for v in self.comments.values())

    def is_empty(self) -> bool:
        return not self.records and not self.config

    def record_ids(self) -> list[str]:
        """Distinct record ids in snapshot order; a repeated id keeps its first row."""
        return list(dict.fromkeys(record.id for record in self.records))

    def unique_dependencies(self, issue_id: str) -> list[Dependency]:
        """Dependencies of one record, first row per (issue_id, depends_on_id)."""
        by_key: dict[str, Dependency] = {}
        for dep in self.dependencies.get(issue_id, ()):
            by_key.setdefault(dep.depends_on_id, dep)
        return list(by_key.values())

    def orphan_counts(self) -> dict[str, int]:
        """
        Related rows whose issue_id matches no extracted record.

        The legacy store does not enforce foreign keys, so deleted issues can
        leave labels, dependencies, events and comments behind. Only tables
        with orphans appear in the result.
        """
        known = set(self.record_ids())
        counts = {}
        for table, rows in (
            ("labels", self.labels),
            ("dependencies", self.dependencies),
            ("events", self.events),
            ("comments", self.comments),
        ):
            orphaned = sum(len(v) for k, v in rows.items() if k not in known)
            if orphaned:
                counts[table] = orphaned
        return counts

    def table_counts(self) -> dict[str, int]:
        """
        Rows the target tables will hold after importing this snapshot.

        One row per distinct record id and per (issue_id, depends_on_id)
        pair. Orphan rows are not counted.
        """
        ids = self.record_ids()
        return {
            "issues": len(ids),
            "dependencies": sum(len(self.unique_dependencies(i)) for i in ids),
            "labels": sum(len(self.labels.get(i, ())) for i in ids),
            "events": sum(len(self.events.get(i, ())) for i in ids),
            "comments": sum(len(self.comments.get(i, ())) for i in ids),
        }
