"""
Tests for legacy store extraction.

Uses Python's unittest module.
Tests file validation, both extractors, and their parity.
"""

from __future__ import annotations

import shutil
import sqlite3
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import create_legacy_database

from issuevault.migration.errors import CorruptLegacyStoreError, ExtractionError
from issuevault.migration.extract import (
    SQLiteCLIExtractor,
    SQLiteDriverExtractor,
    find_legacy_database,
    migrated_marker_path,
    select_extractor,
    verify_legacy_file,
)

HAS_SQLITE_CLI = shutil.which("sqlite3") is not None


class ExtractTestCase(unittest.TestCase):

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestVerifyLegacyFile(ExtractTestCase):
    """Tests for header validation."""

    def test_missing_file(self) -> None:
        with self.assertRaises(ExtractionError):
            verify_legacy_file(self.temp_dir / "nope.db")

    def test_empty_file_is_new_store(self) -> None:
        """Test that a zero-length file is accepted as an empty store."""
        path = self.temp_dir / "issues.db"
        path.touch()
        self.assertFalse(verify_legacy_file(path))

    def test_truncated_file(self) -> None:
        path = self.temp_dir / "issues.db"
        path.write_bytes(b"SQLite format 3\x00" + b"\x00" * 20)
        with self.assertRaises(CorruptLegacyStoreError) as cm:
            verify_legacy_file(path)
        self.assertIn("truncated", str(cm.exception))

    def test_wrong_magic(self) -> None:
        path = self.temp_dir / "issues.db"
        path.write_bytes(b"This is not a database" + b"\x00" * 200)
        with self.assertRaises(CorruptLegacyStoreError) as cm:
            verify_legacy_file(path)
        self.assertIn("not a SQLite 3 file", str(cm.exception))

    def test_valid_file(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db")
        self.assertTrue(verify_legacy_file(path))


class TestFindLegacyDatabase(ExtractTestCase):
    """Tests for locating the legacy file."""

    def test_prefers_issues_db(self) -> None:
        (self.temp_dir / "aaa.db").touch()
        (self.temp_dir / "issues.db").touch()
        self.assertEqual(find_legacy_database(self.temp_dir), self.temp_dir / "issues.db")

    def test_skips_backups_and_migrated(self) -> None:
        (self.temp_dir / "issues.backup-pre-target-20240101-000000.db").touch()
        (self.temp_dir / "other.db.migrated").touch()
        self.assertIsNone(find_legacy_database(self.temp_dir))
        (self.temp_dir / "tracker.db").touch()
        self.assertEqual(find_legacy_database(self.temp_dir), self.temp_dir / "tracker.db")

    def test_marker_path(self) -> None:
        self.assertEqual(
            migrated_marker_path(self.temp_dir / "issues.db"),
            self.temp_dir / "issues.db.migrated",
        )


class TestDriverExtractor(ExtractTestCase):
    """Tests for the sqlite3 module extractor."""

    def test_extracts_all_tables(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=3)
        snapshot = SQLiteDriverExtractor().extract(path)

        self.assertEqual(
            snapshot.table_counts(),
            {"issues": 3, "dependencies": 2, "labels": 6, "events": 6, "comments": 3},
        )
        self.assertEqual(snapshot.config, {"issue_prefix": "proj"})
        self.assertEqual(snapshot.prefix, "proj")

    def test_records_ordered_by_creation(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=3)
        snapshot = SQLiteDriverExtractor().extract(path)
        self.assertEqual([r.id for r in snapshot.records], ["proj-1", "proj-2", "proj-3"])

    def test_same_timestamp_events_keep_insertion_order(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=1)
        snapshot = SQLiteDriverExtractor().extract(path)
        self.assertEqual(
            [e.event_type for e in snapshot.events["proj-1"]], ["created", "labeled"]
        )

    def test_absent_columns_defaulted(self) -> None:
        """Test that columns the old schema lacks take their defaults."""
        path = create_legacy_database(self.temp_dir / "issues.db", issues=1)
        record = SQLiteDriverExtractor().extract(path).records[0]

        self.assertEqual(record.design, "")
        self.assertEqual(record.owner, "")
        self.assertEqual(record.metadata, "{}")
        self.assertTrue(record.pinned)
        dep_snapshot = SQLiteDriverExtractor().extract(
            create_legacy_database(self.temp_dir / "two.db", issues=2)
        )
        dep = dep_snapshot.dependencies["proj-2"][0]
        self.assertEqual(dep.thread_id, "")
        self.assertEqual(dep.metadata, "{}")

    def test_missing_optional_tables(self) -> None:
        path = self.temp_dir / "issues.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE issues (id TEXT PRIMARY KEY, title TEXT)")
        conn.execute("INSERT INTO issues VALUES ('x-1', 'lonely')")
        conn.commit()
        conn.close()

        snapshot = SQLiteDriverExtractor().extract(path)

        self.assertEqual(snapshot.record_count, 1)
        self.assertEqual(snapshot.labels, {})
        self.assertEqual(snapshot.config, {})

    def test_empty_file_gives_empty_snapshot(self) -> None:
        path = self.temp_dir / "issues.db"
        path.touch()
        self.assertTrue(SQLiteDriverExtractor().extract(path).is_empty())

    def test_path_with_uri_characters(self) -> None:
        """Test that '#' and '?' in the path do not break the read-only URI."""
        odd_dir = self.temp_dir / "we#ird?dir"
        odd_dir.mkdir()
        path = create_legacy_database(odd_dir / "issues.db", issues=1)
        self.assertEqual(SQLiteDriverExtractor().extract(path).record_count, 1)

    def test_does_not_modify_file(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db")
        before = path.read_bytes()
        SQLiteDriverExtractor().extract(path)
        self.assertEqual(path.read_bytes(), before)


class TestCLIExtractor(ExtractTestCase):
    """Tests for the sqlite3 command-line extractor."""

    def test_missing_binary(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db")
        extractor = SQLiteCLIExtractor(binary=str(self.temp_dir / "no-such-sqlite3"))
        with self.assertRaises(ExtractionError):
            extractor.extract(path)

    def test_timeout(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db")
        with patch(
            "issuevault.migration.extract.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="sqlite3", timeout=1),
        ):
            with self.assertRaises(ExtractionError) as cm:
                SQLiteCLIExtractor().extract(path)
        self.assertIn("timed out", str(cm.exception))

    def test_corrupt_output_reported(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db")
        failed = subprocess.CompletedProcess(
            args=[], returncode=1, stdout="", stderr="Error: file is not a database"
        )
        with patch("issuevault.migration.extract.subprocess.run", return_value=failed):
            with self.assertRaises(CorruptLegacyStoreError):
                SQLiteCLIExtractor().extract(path)

    @unittest.skipUnless(HAS_SQLITE_CLI, "sqlite3 command-line client not installed")
    def test_extracts_all_tables(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=3)
        snapshot = SQLiteCLIExtractor().extract(path)
        self.assertEqual(snapshot.record_count, 3)
        self.assertEqual(snapshot.event_count, 6)


@unittest.skipUnless(HAS_SQLITE_CLI, "sqlite3 command-line client not installed")
class TestExtractorParity(ExtractTestCase):
    """Both extractors must produce identical snapshots."""

    def test_parity_on_populated_store(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=5)
        self.assertEqual(SQLiteDriverExtractor().extract(path), SQLiteCLIExtractor().extract(path))

    def test_parity_on_nulls_and_unicode(self) -> None:
        path = create_legacy_database(self.temp_dir / "issues.db", issues=1)
        conn = sqlite3.connect(path)
        conn.execute(
            "INSERT INTO issues (id, title, description, estimated_minutes, created_at) "
            "VALUES ('proj-9', 'Ünïcødé ☃', NULL, 45, '2024-02-01 08:00:00')"
        )
        conn.execute(
            "INSERT INTO events (issue_id, event_type, actor, comment, created_at) "
            "VALUES ('proj-9', 'commented', 'zoë', 'line1\nline2', NULL)"
        )
        conn.commit()
        conn.close()

        driver = SQLiteDriverExtractor().extract(path)
        cli = SQLiteCLIExtractor().extract(path)

        self.assertEqual(driver, cli)
        self.assertEqual(driver.records[-1].estimated_minutes, 45)


class TestSelectExtractor(unittest.TestCase):
    """Tests for extractor selection."""

    def test_driver_preferred(self) -> None:
        self.assertIsInstance(select_extractor("auto"), SQLiteDriverExtractor)

    def test_cli_fallback(self) -> None:
        with patch.object(SQLiteDriverExtractor, "is_available", return_value=False), \
                patch.object(SQLiteCLIExtractor, "is_available", return_value=True):
            self.assertIsInstance(select_extractor("auto"), SQLiteCLIExtractor)

    def test_nothing_available(self) -> None:
        with patch.object(SQLiteDriverExtractor, "is_available", return_value=False), \
                patch.object(SQLiteCLIExtractor, "is_available", return_value=False):
            with self.assertRaises(ExtractionError):
                select_extractor("auto")

    def test_unknown_preference(self) -> None:
        with self.assertRaises(ExtractionError):
            select_extractor("odbc")


if __name__ == "__main__":
    unittest.main()
