"""
Freshness check between the live database and a portable export.

A project directory may hold an ``issues.jsonl`` that was regenerated
elsewhere (pulled from git, copied from another machine) after the database
last imported it. Reading the database then would silently miss that data.
The check compares the file's modification time with the ``last_import_time``
recorded in the database's metadata table.

Only a file that is demonstrably newer blocks. A missing file, a missing
baseline, or an unreadable baseline all let the caller proceed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from issuevault.storage.target_store import TargetStore, TargetStoreError

logger = logging.getLogger(__name__)

LAST_IMPORT_TIME_KEY = "last_import_time"
PORTABLE_ISSUES_FILE = "issues.jsonl"

# Filesystem mtime granularity
FRESHNESS_TOLERANCE = timedelta(seconds=1)

_FRACTION_RE = re.compile(r"\.(\d{1,9})(?=Z|[+-]\d{2}:\d{2}$)")

_NANO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
_PLAIN_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


class FreshnessStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    SKIPPED = "skipped"


class StaleDatabaseError(Exception):
    """The portable export is newer than the last import into the database."""

    pass


@dataclass
class FreshnessReport:
    """Outcome of a freshness check."""

    status: FreshnessStatus
    reason: str = ""
    file_path: Path | None = None
    file_mtime: datetime | None = None
    last_import: datetime | None = None

    @property
    def is_stale(self) -> bool:
        return self.status is FreshnessStatus.STALE


def format_import_time(value: datetime) -> str:
    """Format a last-import timestamp in RFC 3339 with nanosecond digits."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f") + "000Z"


def parse_import_time(text: str) -> datetime | None:
    """
    Parse a recorded last-import timestamp.

    The sub-second form is tried first, then plain RFC 3339. Fractions
    beyond microseconds are truncated.

    Returns:
        An aware datetime, or None if neither form matches.
    """
    text = text.strip()
    match = _FRACTION_RE.search(text)
    if match:
        micro = match.group(1)[:6].ljust(6, "0")
        candidate = text[: match.start()] + "." + micro + text[match.end() :]
        try:
            return datetime.strptime(candidate, _NANO_FORMAT)
        except ValueError:
            pass
    try:
        return datetime.strptime(text, _PLAIN_FORMAT)
    except ValueError:
        return None


def check_database_freshness(store: TargetStore, directory: Path) -> FreshnessReport:
    """
    Decide whether the database may be missing data from the portable export.

    Args:
        store: Open target store.
        directory: Directory holding ``issues.jsonl``.

    Returns:
        FreshnessReport; STALE only when the file is newer than the last
        import by more than FRESHNESS_TOLERANCE.
    """
    path = Path(directory) / PORTABLE_ISSUES_FILE
    try:
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
    except FileNotFoundError:
        return FreshnessReport(FreshnessStatus.SKIPPED, reason="no portable export found")

    try:
        recorded = store.get_metadata(LAST_IMPORT_TIME_KEY)
    except TargetStoreError as e:
        logger.debug(f"Cannot read {LAST_IMPORT_TIME_KEY}: {e}")
        return FreshnessReport(
            FreshnessStatus.SKIPPED, reason="last import time unavailable", file_path=path
        )

    if not recorded:
        return FreshnessReport(
            FreshnessStatus.SKIPPED, reason="no last import recorded", file_path=path
        )

    last_import = parse_import_time(recorded)
    if last_import is None:
        logger.warning(
            f"Could not parse {LAST_IMPORT_TIME_KEY} {recorded!r}, skipping freshness check"
        )
        return FreshnessReport(
            FreshnessStatus.SKIPPED, reason="last import time unparsable", file_path=path
        )

    if mtime > last_import + FRESHNESS_TOLERANCE:
        return FreshnessReport(
            FreshnessStatus.STALE,
            reason=f"{path.name} modified after the last import",
            file_path=path,
            file_mtime=mtime,
            last_import=last_import,
        )
    return FreshnessReport(
        FreshnessStatus.FRESH, file_path=path, file_mtime=mtime, last_import=last_import
    )


def ensure_database_fresh(store: TargetStore, directory: Path) -> FreshnessReport:
    """
    Like check_database_freshness() but raises on a stale database.

    Raises:
        StaleDatabaseError: If the portable export is newer than the last import.
    """
    report = check_database_freshness(store, directory)
    if report.is_stale:
        raise StaleDatabaseError(
            f"Database may be out of date: {report.file_path} was modified at "
            f"{report.file_mtime.isoformat()} but the last import was at "
            f"{report.last_import.isoformat()}. Run 'issuevault backup restore' to re-import."
        )
    return report
