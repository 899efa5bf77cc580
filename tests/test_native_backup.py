"""
Tests for native backup destinations.

Uses Python's unittest module.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from fakes import FakeTargetStore

from issuevault.backup.native import (
    NATIVE_CONFIG_FILE,
    NATIVE_STATE_FILE,
    NativeBackupError,
    NativeBackupManager,
    NativeBackupNotConfiguredError,
    directory_size,
    format_size,
    resolve_backup_url,
)
from issuevault.storage.target_store import TargetStoreError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestResolveBackupUrl(unittest.TestCase):
    """Tests for destination URL normalization."""

    def test_remote_urls_unchanged(self) -> None:
        for url in (
            "https://dolthub.com/org/repo",
            "file:///srv/backups/issues",
            "aws://[table:bucket]/issues",
            "gs://bucket/issues",
        ):
            self.assertEqual(resolve_backup_url(url), url)

    def test_home_expanded(self) -> None:
        expected = "file://" + os.path.join(os.path.expanduser("~"), "Dropbox", "issues")
        self.assertEqual(resolve_backup_url("~/Dropbox/issues"), expected)

    def test_relative_path_made_absolute(self) -> None:
        self.assertEqual(resolve_backup_url("backups"), "file://" + os.path.abspath("backups"))

    def test_absolute_path(self) -> None:
        self.assertEqual(resolve_backup_url("/mnt/usb/issues"), "file:///mnt/usb/issues")


class NativeBackupTestCase(unittest.TestCase):

    def setUp(self) -> None:
        self.project_dir = Path(tempfile.mkdtemp())
        self.store = FakeTargetStore().open()
        ticks = iter([10.0, 12.5])
        self.manager = NativeBackupManager(
            self.project_dir, clock=lambda: NOW, timer=lambda: next(ticks)
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.project_dir, ignore_errors=True)


class TestInitDestination(NativeBackupTestCase):

    def test_registers_and_saves_config(self) -> None:
        config = self.manager.init_destination(self.store, "/mnt/usb/issues")

        self.assertEqual(self.store.backups, {"default": "file:///mnt/usb/issues"})
        self.assertEqual(config.backup_url, "file:///mnt/usb/issues")
        saved = json.loads((self.project_dir / NATIVE_CONFIG_FILE).read_text())
        self.assertEqual(saved["backup_name"], "default")
        self.assertEqual(saved["created_at"], "2024-06-01T12:00:00Z")

    def test_existing_destination_replaced(self) -> None:
        """Test that re-running init points the same name at the new URL."""
        self.manager.init_destination(self.store, "/mnt/old")
        self.manager.init_destination(self.store, "/mnt/new")

        self.assertEqual(self.store.backups["default"], "file:///mnt/new")
        self.assertEqual(self.manager.load_config().backup_url, "file:///mnt/new")

    def test_engine_refusal(self) -> None:
        def refuse(name, url):
            raise TargetStoreError("unsupported backup url scheme")

        self.store.backup_add = refuse
        with self.assertRaises(NativeBackupError):
            self.manager.init_destination(self.store, "ftp-ish")
        self.assertFalse((self.project_dir / NATIVE_CONFIG_FILE).exists())


class TestSync(NativeBackupTestCase):

    def test_sync_records_state(self) -> None:
        self.manager.init_destination(self.store, "/mnt/usb/issues")

        state = self.manager.sync(self.store)

        self.assertEqual(self.store.synced, ["default"])
        self.assertEqual(state.last_sync, NOW)
        self.assertEqual(state.duration, 2.5)
        saved = json.loads((self.project_dir / NATIVE_STATE_FILE).read_text())
        self.assertEqual(saved, {"last_sync": "2024-06-01T12:00:00Z", "duration": 2.5})

    def test_pending_changes_committed_first(self) -> None:
        self.manager.init_destination(self.store, "/mnt/usb/issues")
        self.store.insert("issues", {"id": "proj-1", "title": "unsaved"})

        self.manager.sync(self.store)

        self.assertEqual(self.store.commits, ["backup sync"])

    def test_commit_failure_does_not_block_sync(self) -> None:
        self.manager.init_destination(self.store, "/mnt/usb/issues")
        self.store.fail_commit = TargetStoreError("working set locked")

        self.manager.sync(self.store)

        self.assertEqual(self.store.synced, ["default"])

    def test_not_configured(self) -> None:
        with self.assertRaises(NativeBackupNotConfiguredError):
            self.manager.sync(self.store)

    def test_sync_failure(self) -> None:
        self.manager.init_destination(self.store, "/mnt/usb/issues")
        self.store.fail_sync = TargetStoreError("permission denied")

        with self.assertRaises(NativeBackupError) as cm:
            self.manager.sync(self.store)

        self.assertNotIsInstance(cm.exception, NativeBackupNotConfiguredError)
        self.assertFalse((self.project_dir / NATIVE_STATE_FILE).exists())

    def test_named_destination(self) -> None:
        self.manager.init_destination(self.store, "/mnt/a", name="offsite")
        self.manager.sync(self.store)
        self.assertEqual(self.store.synced, ["offsite"])


class TestStatus(NativeBackupTestCase):

    def test_unconfigured(self) -> None:
        self.assertEqual(self.manager.status(), {"configured": False})

    def test_configured_and_synced(self) -> None:
        self.manager.init_destination(self.store, "/mnt/usb/issues")
        self.manager.sync(self.store)

        status = self.manager.status()

        self.assertTrue(status["configured"])
        self.assertEqual(status["backup_url"], "file:///mnt/usb/issues")
        self.assertEqual(status["last_sync"], "2024-06-01T12:00:00Z")
        self.assertEqual(status["sync_duration"], 2.5)
        self.assertNotIn("backup_size", status)

    def test_local_backup_size_reported(self) -> None:
        destination = self.project_dir / "native"
        destination.mkdir()
        (destination / "manifest").write_bytes(b"x" * 100)
        (destination / "chunks").mkdir()
        (destination / "chunks" / "a").write_bytes(b"x" * 2048)
        self.manager.init_destination(self.store, str(destination))

        status = self.manager.status()

        self.assertEqual(status["backup_size"], {"bytes": 2148, "human": "2.10 KB"})

    def test_remote_backup_not_measured(self) -> None:
        self.manager.init_destination(self.store, "aws://bucket/issues")
        self.assertNotIn("backup_size", self.manager.status())

    def test_database_size(self) -> None:
        self.assertIsNone(self.manager.database_size())

        data_dir = self.project_dir / "dolt" / "issues" / ".dolt"
        data_dir.mkdir(parents=True)
        (data_dir / "noms").write_bytes(b"x" * 512)

        self.assertEqual(self.manager.database_size(), 512)

    def test_corrupt_config(self) -> None:
        (self.project_dir / NATIVE_CONFIG_FILE).write_text("{oops")
        with self.assertRaises(NativeBackupError):
            self.manager.status()


class TestSizes(unittest.TestCase):
    """Tests for directory_size and format_size."""

    def test_format_size(self) -> None:
        self.assertEqual(format_size(0), "0 B")
        self.assertEqual(format_size(1023), "1023 B")
        self.assertEqual(format_size(1536), "1.50 KB")
        self.assertEqual(format_size(5 * 1024 * 1024), "5.00 MB")
        self.assertEqual(format_size(3 * 1024 ** 4), "3072.00 GB")

    def test_missing_directory_is_empty(self) -> None:
        self.assertEqual(directory_size(Path(tempfile.gettempdir()) / "no-such-dir-xyz"), 0)


if __name__ == "__main__":
    unittest.main()
