"""
Legacy store extraction.

Reads everything out of the retiring SQLite file into an immutable Snapshot.
There are two extractors behind one interface:

- SQLiteDriverExtractor talks to the file through Python's sqlite3 module.
- SQLiteCLIExtractor shells out to the ``sqlite3`` command-line client and
  parses its JSON output, for interpreters built without the driver.

They are written separately on purpose and are checked against each other by
a parity test: both must produce equal snapshots for the same file.

Both open the file read-only and validate the SQLite header before reading.
Columns missing from older schemas are filled from the defaults declared in
issuevault.storage.models.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import quote

from issuevault.migration.errors import CorruptLegacyStoreError, ExtractionError
from issuevault.storage.models import (
    COMMENT_COLUMNS,
    DEPENDENCY_COLUMNS,
    EVENT_COLUMNS,
    ISSUE_COLUMNS,
    Comment,
    Dependency,
    Event,
    Record,
    Snapshot,
)

logger = logging.getLogger(__name__)

SQLITE_MAGIC = b"SQLite format 3\x00"
SQLITE_HEADER_SIZE = 100

MIGRATED_SUFFIX = ".migrated"
LEGACY_DATABASE_FILENAME = "issues.db"

SQLITE_CLI = "sqlite3"
CLI_TIMEOUT_SECONDS = 120

EXTRACTOR_AUTO = "auto"
EXTRACTOR_DRIVER = "driver"
EXTRACTOR_CLI = "cli"


def verify_legacy_file(path: Path) -> bool:
    """
    Validate the legacy file before a full read.

    Args:
        path: Path to the SQLite file.

    Returns:
        False for a zero-length file (a store that was created but never
        written), True for a file that looks like a SQLite database.

    Raises:
        ExtractionError: If the file does not exist or cannot be read.
        CorruptLegacyStoreError: If the file is truncated or not SQLite.
    """
    path = Path(path)
    if not path.is_file():
        raise ExtractionError(f"Legacy database not found: {path}")

    try:
        size = path.stat().st_size
        if size == 0:
            return False
        with open(path, "rb") as f:
            header = f.read(SQLITE_HEADER_SIZE)
    except OSError as e:
        raise ExtractionError(f"Cannot read legacy database {path}: {e}") from e

    if size < SQLITE_HEADER_SIZE:
        raise CorruptLegacyStoreError(
            f"Legacy database {path} is truncated: {size} bytes, "
            f"a SQLite file has at least a {SQLITE_HEADER_SIZE}-byte header"
        )
    if header[: len(SQLITE_MAGIC)] != SQLITE_MAGIC:
        raise CorruptLegacyStoreError(
            f"Legacy database {path} is not a SQLite 3 file "
            f"(header starts with {header[:16]!r})"
        )
    return True


def find_legacy_database(project_dir: Path) -> Path | None:
    """
    Find the legacy SQLite file in a project directory.

    Prefers ``issues.db``; otherwise the first ``*.db`` file that is not a
    pre-migration backup.
    """
    project_dir = Path(project_dir)
    preferred = project_dir / LEGACY_DATABASE_FILENAME
    if preferred.is_file():
        return preferred
    for candidate in sorted(project_dir.glob("*.db")):
        if "backup" in candidate.name or MIGRATED_SUFFIX in candidate.name:
            continue
        if candidate.is_file():
            return candidate
    return None


def migrated_marker_path(legacy_path: Path) -> Path:
    """Path the legacy file is renamed to once migration is final."""
    legacy_path = Path(legacy_path)
    return legacy_path.with_name(legacy_path.name + MIGRATED_SUFFIX)


class LegacyExtractor(ABC):
    """Reads a legacy store into a Snapshot."""

    name = ""

    def extract(self, path: Path) -> Snapshot:
        """
        Extract a snapshot from the legacy file.

        Raises:
            ExtractionError: If the file cannot be read.
            CorruptLegacyStoreError: If the file fails format validation.
        """
        path = Path(path)
        if not verify_legacy_file(path):
            logger.info(f"Legacy database {path} is empty, nothing to extract")
            return Snapshot()

        snapshot = self._extract(path)
        logger.info(
            f"Extracted {snapshot.record_count} issues, {snapshot.dependency_count} dependencies, "
            f"{snapshot.label_count} labels, {snapshot.event_count} events, "
            f"{snapshot.comment_count} comments from {path.name} ({self.name})"
        )
        return snapshot

    @classmethod
    @abstractmethod
    def is_available(cls) -> bool:
        """True if this extractor can run in the current environment."""

    @abstractmethod
    def _extract(self, path: Path) -> Snapshot:
        pass


class SQLiteDriverExtractor(LegacyExtractor):
    """Extractor backed by Python's sqlite3 module."""

    name = EXTRACTOR_DRIVER

    @classmethod
    def is_available(cls) -> bool:
        return importlib.util.find_spec("_sqlite3") is not None

    def _extract(self, path: Path) -> Snapshot:
        import sqlite3

        # Percent-encode so '#' and '?' in directory names survive the URI
        uri = f"file:{quote(str(path.resolve()))}?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise ExtractionError(f"Cannot open legacy database {path}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }

            def columns(table: str) -> set[str]:
                return {row["name"] for row in conn.execute(f'PRAGMA table_info("{table}")')}

            def rows(sql: str) -> list[dict[str, Any]]:
                return [dict(row) for row in conn.execute(sql)]

            records: list[Record] = []
            if "issues" in tables:
                present = columns("issues")
                select = ["id"] + [name for name, _, _ in ISSUE_COLUMNS if name in present]
                order = "created_at, id" if "created_at" in present else "id"
                sql = f"SELECT {', '.join(_quote(c) for c in select)} FROM issues ORDER BY {order}"
                records = [Record.from_row(row) for row in rows(sql)]

            labels: list[tuple[str, str]] = []
            if "labels" in tables:
                labels = [
                    (str(row["issue_id"]), str(row["label"]))
                    for row in rows("SELECT issue_id, label FROM labels ORDER BY issue_id, label")
                ]

            dependencies: list[Dependency] = []
            if "dependencies" in tables:
                sql = _related_query("dependencies", DEPENDENCY_COLUMNS, columns("dependencies"))
                dependencies = [Dependency.from_row(row) for row in rows(sql)]

            events: list[Event] = []
            if "events" in tables:
                sql = _related_query("events", EVENT_COLUMNS, columns("events"))
                events = [Event.from_row(row) for row in rows(sql)]

            comments: list[Comment] = []
            if "comments" in tables:
                sql = _related_query("comments", COMMENT_COLUMNS, columns("comments"))
                comments = [Comment.from_row(row) for row in rows(sql)]

            config: dict[str, str] = {}
            if "config" in tables:
                for row in rows('SELECT "key", value FROM config ORDER BY "key"'):
                    config[str(row["key"])] = "" if row["value"] is None else str(row["value"])

        except sqlite3.DatabaseError as e:
            message = str(e)
            if "not a database" in message or "malformed" in message:
                raise CorruptLegacyStoreError(f"Legacy database {path} is corrupt: {message}") from e
            raise ExtractionError(f"Failed to read legacy database {path}: {message}") from e
        except ValueError as e:
            raise ExtractionError(f"Unreadable row in legacy database {path}: {e}") from e
        finally:
            conn.close()

        return Snapshot.build(records, labels, dependencies, events, comments, config)


class SQLiteCLIExtractor(LegacyExtractor):
    """
    Extractor that drives the ``sqlite3`` command-line client.

    Each query runs as ``sqlite3 -readonly -bail <file>`` with the query fed
    on stdin after ``.mode json``.
    """

    name = EXTRACTOR_CLI

    def __init__(self, binary: str = SQLITE_CLI, timeout: float = CLI_TIMEOUT_SECONDS) -> None:
        self.binary = binary
        self.timeout = timeout

    @classmethod
    def is_available(cls) -> bool:
        return shutil.which(SQLITE_CLI) is not None

    def _run(self, path: Path, sql: str) -> list[dict[str, Any]]:
        try:
            result = subprocess.run(
                [self.binary, "-readonly", "-bail", str(path.resolve())],
                input=f".mode json\n{sql};\n",
                capture_output=True,
                encoding="utf-8",
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ExtractionError(f"sqlite3 command-line client not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise ExtractionError(f"sqlite3 timed out after {self.timeout}s reading {path}") from e

        stderr = result.stderr.strip()
        if result.returncode != 0 or stderr.startswith(("Error", "Parse error", "Runtime error")):
            if "not a database" in stderr or "malformed" in stderr:
                raise CorruptLegacyStoreError(f"Legacy database {path} is corrupt: {stderr}")
            raise ExtractionError(f"sqlite3 failed reading {path}: {stderr or result.returncode}")

        output = result.stdout.strip()
        if not output:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Unexpected sqlite3 output for {path}: {e}") from e
        if not isinstance(data, list):
            raise ExtractionError(f"Unexpected sqlite3 output for {path}: not a JSON array")
        return data

    def _columns(self, path: Path, table: str) -> set[str]:
        rows = self._run(path, f"SELECT name FROM pragma_table_info('{table}')")
        return {str(row["name"]) for row in rows}

    def _extract(self, path: Path) -> Snapshot:
        tables = {
            str(row["name"])
            for row in self._run(path, "SELECT name FROM sqlite_master WHERE type = 'table'")
        }

        try:
            records: list[Record] = []
            if "issues" in tables:
                present = self._columns(path, "issues")
                wanted = [name for name, _, _ in ISSUE_COLUMNS if name in present]
                order = "created_at, id" if "created_at" in present else "id"
                sql = "SELECT " + ", ".join(_quote(c) for c in ["id", *wanted])
                sql += f" FROM issues ORDER BY {order}"
                records = [Record.from_row(row) for row in self._run(path, sql)]

            labels: list[tuple[str, str]] = []
            if "labels" in tables:
                sql = "SELECT issue_id, label FROM labels ORDER BY issue_id, label"
                labels = [(str(row["issue_id"]), str(row["label"])) for row in self._run(path, sql)]

            dependencies = []
            if "dependencies" in tables:
                sql = _related_query("dependencies", DEPENDENCY_COLUMNS, self._columns(path, "dependencies"))
                dependencies = [Dependency.from_row(row) for row in self._run(path, sql)]

            events = []
            if "events" in tables:
                sql = _related_query("events", EVENT_COLUMNS, self._columns(path, "events"))
                events = [Event.from_row(row) for row in self._run(path, sql)]

            comments = []
            if "comments" in tables:
                sql = _related_query("comments", COMMENT_COLUMNS, self._columns(path, "comments"))
                comments = [Comment.from_row(row) for row in self._run(path, sql)]

            config: dict[str, str] = {}
            if "config" in tables:
                for row in self._run(path, 'SELECT "key", value FROM config ORDER BY "key"'):
                    value = row.get("value")
                    config[str(row["key"])] = "" if value is None else str(value)
        except ValueError as e:
            raise ExtractionError(f"Unreadable row in legacy database {path}: {e}") from e

        return Snapshot.build(records, labels, dependencies, events, comments, config)


def _quote(column: str) -> str:
    return f'"{column}"'


def _related_query(
    table: str,
    known: tuple[tuple[str, str, Any], ...],
    present: set[str],
) -> str:
    """SELECT for a per-issue table, ordered by creation time then rowid."""
    wanted = [name for name, _, _ in known if name in present]
    order = "created_at, rowid" if "created_at" in present else "rowid"
    return f"SELECT {', '.join(_quote(c) for c in wanted)} FROM {table} ORDER BY {order}"


def select_extractor(preference: str = EXTRACTOR_AUTO) -> LegacyExtractor:
    """
    Pick an extractor.

    Args:
        preference: ``driver``, ``cli`` or ``auto``. Auto prefers the
                    driver and falls back to the command-line client.

    Raises:
        ExtractionError: If the requested extractor cannot run here, or
                         no extractor is available.
    """
    if preference == EXTRACTOR_DRIVER:
        if not SQLiteDriverExtractor.is_available():
            raise ExtractionError("Python sqlite3 module is not available")
        return SQLiteDriverExtractor()
    if preference == EXTRACTOR_CLI:
        if not SQLiteCLIExtractor.is_available():
            raise ExtractionError("sqlite3 command-line client not found on PATH")
        return SQLiteCLIExtractor()
    if preference != EXTRACTOR_AUTO:
        raise ExtractionError(f"Unknown extractor: {preference}")

    if SQLiteDriverExtractor.is_available():
        return SQLiteDriverExtractor()
    if SQLiteCLIExtractor.is_available():
        logger.info("sqlite3 module unavailable, using the sqlite3 command-line client")
        return SQLiteCLIExtractor()
    raise ExtractionError(
        "No way to read the legacy database: neither the sqlite3 module "
        "nor the sqlite3 command-line client is available"
    )
