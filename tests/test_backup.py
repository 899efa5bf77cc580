"""
Tests for the portable JSONL backup.

Tests cover:
- Full export of every table
- Incremental event export and its watermark
- Skipping unchanged exports
- Backup state persistence
- Value normalization
"""

import json
import shutil
import tempfile
import unittest
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

from fakes import FakeTargetStore, seed_store

from issuevault.backup import (
    BackupError,
    BackupManager,
    BackupState,
    BackupStatus,
    backup_status,
    load_backup_state,
)
from issuevault.backup.manager import STATE_FILE, normalize_value, save_backup_state

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def read_lines(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class BackupTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.backup_dir = self.temp_dir / "backup"
        self.store = FakeTargetStore().open()
        seed_store(self.store)
        self.manager = BackupManager(self.store, self.backup_dir, clock=lambda: NOW)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestExport(BackupTestCase):
    """Tests for BackupManager.export."""

    def test_writes_every_table(self):
        """Test that one JSONL file per table plus the state file is written."""
        result = self.manager.export()

        self.assertEqual(result.status, BackupStatus.EXPORTED)
        self.assertEqual(
            sorted(p.name for p in self.backup_dir.iterdir()),
            [
                "backup_state.json",
                "comments.jsonl",
                "config.jsonl",
                "dependencies.jsonl",
                "events.jsonl",
                "issues.jsonl",
                "labels.jsonl",
            ],
        )

    def test_issue_rows_ordered_and_normalized(self):
        self.manager.export()

        issues = read_lines(self.backup_dir / "issues.jsonl")
        self.assertEqual([row["id"] for row in issues], ["proj-1", "proj-2"])
        self.assertEqual(issues[0]["created_at"], "2024-01-01T10:00:00Z")

    def test_keys_sorted(self):
        """Test that lines are written with sorted keys for stable diffs."""
        self.manager.export()

        first_line = (self.backup_dir / "issues.jsonl").read_text().splitlines()[0]
        keys = list(json.loads(first_line).keys())
        self.assertEqual(keys, sorted(keys))

    def test_state_records_commit_and_counts(self):
        result = self.manager.export()

        state = load_backup_state(self.backup_dir)
        self.assertEqual(state.last_target_commit, "commit-1")
        self.assertEqual(state.last_event_id, 2)
        self.assertEqual(state.timestamp, NOW)
        self.assertEqual(state.counts.issues, 2)
        self.assertEqual(state.counts.events, 2)
        self.assertEqual(state.counts.labels, 2)
        self.assertEqual(state.counts.config, 1)
        self.assertEqual(result.events_appended, 2)

    def test_unchanged_commit_skips(self):
        self.manager.export()
        before = (self.backup_dir / STATE_FILE).read_bytes()

        result = self.manager.export()

        self.assertEqual(result.status, BackupStatus.UNCHANGED)
        self.assertEqual((self.backup_dir / STATE_FILE).read_bytes(), before)

    def test_force_exports_anyway(self):
        self.manager.export()
        result = self.manager.export(force=True)
        self.assertEqual(result.status, BackupStatus.EXPORTED)
        self.assertEqual(result.events_appended, 0)
        self.assertEqual(len(read_lines(self.backup_dir / "events.jsonl")), 2)

    def test_closed_store_rejected(self):
        self.store.close()
        with self.assertRaises(BackupError):
            self.manager.export()

    def test_corrupt_state_file(self):
        self.backup_dir.mkdir()
        (self.backup_dir / STATE_FILE).write_text("{not json")
        with self.assertRaises(BackupError):
            self.manager.export()


class TestIncrementalEvents(BackupTestCase):
    """Tests for the append-only events file."""

    def test_only_new_events_appended(self):
        self.manager.export()
        self.store.insert("events", {"issue_id": "proj-1", "event_type": "closed"})
        self.store.commit("close")

        result = self.manager.export()

        events = read_lines(self.backup_dir / "events.jsonl")
        self.assertEqual([e["id"] for e in events], [1, 2, 3])
        self.assertEqual(result.events_appended, 1)
        self.assertEqual(result.state.last_event_id, 3)
        self.assertEqual(result.state.counts.events, 3)

    def test_watermark_reset_when_file_missing(self):
        """Test that a deleted events file is rebuilt from the first event."""
        self.manager.export()
        (self.backup_dir / "events.jsonl").unlink()
        self.store.insert("issues", {"id": "proj-9", "title": "new"})
        self.store.commit("more")

        with self.assertLogs("issuevault.backup.manager", level="WARNING"):
            result = self.manager.export()

        self.assertEqual(len(read_lines(self.backup_dir / "events.jsonl")), 2)
        self.assertEqual(result.state.counts.events, 2)

    def test_watermark_ahead_of_store_rewrites_events(self):
        """Test that event ids restarting below the watermark are not skipped."""
        self.backup_dir.mkdir()
        (self.backup_dir / "events.jsonl").write_text('{"id": 999, "issue_id": "old-1"}\n')
        save_backup_state(self.backup_dir, BackupState(last_event_id=1000))

        with self.assertLogs("issuevault.backup.manager", level="WARNING") as logs:
            result = self.manager.export(force=True)

        events = read_lines(self.backup_dir / "events.jsonl")
        self.assertEqual([e["id"] for e in events], [1, 2])
        self.assertEqual(result.events_appended, 2)
        self.assertEqual(result.state.last_event_id, 2)
        self.assertEqual(result.state.counts.events, 2)
        self.assertIn("ahead of the newest event id 2", logs.output[0])

    def test_watermark_at_newest_event_keeps_file(self):
        self.manager.export()
        before = (self.backup_dir / "events.jsonl").read_bytes()

        result = self.manager.export(force=True)

        self.assertEqual(result.events_appended, 0)
        self.assertEqual((self.backup_dir / "events.jsonl").read_bytes(), before)

    def test_empty_events_file_created(self):
        store = FakeTargetStore().open()
        store.insert("issues", {"id": "a-1", "title": "t"})
        store.commit("one")

        BackupManager(store, self.backup_dir, clock=lambda: NOW).export()

        self.assertEqual((self.backup_dir / "events.jsonl").read_bytes(), b"")


class TestBackupState(unittest.TestCase):
    """Tests for BackupState persistence."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_state_is_empty(self):
        state = backup_status(self.temp_dir)
        self.assertFalse(state.has_run)
        self.assertEqual(state.last_event_id, 0)

    def test_from_dict_tolerates_missing_fields(self):
        state = BackupState.from_dict({"last_event_id": "7"})
        self.assertEqual(state.last_event_id, 7)
        self.assertEqual(state.counts.issues, 0)
        self.assertIsNone(state.timestamp)


class TestNormalizeValue(unittest.TestCase):
    """Tests for database value conversion."""

    def test_conversions(self):
        self.assertEqual(normalize_value(b"bytes"), "bytes")
        self.assertEqual(normalize_value(datetime(2024, 1, 2, 3, 4, 5)), "2024-01-02T03:04:05Z")
        self.assertEqual(normalize_value(date(2024, 1, 2)), "2024-01-02")
        self.assertEqual(normalize_value(Decimal("3")), 3)
        self.assertEqual(normalize_value(Decimal("1.5")), 1.5)
        self.assertEqual(normalize_value("text"), "text")

    def test_zero_datetime_is_null(self):
        self.assertIsNone(normalize_value(datetime(1, 1, 1)))


if __name__ == "__main__":
    unittest.main()
