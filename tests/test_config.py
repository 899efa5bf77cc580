"""Tests for configuration modules (settings, metadata and credentials)."""

import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from issuevault.config.credentials import (
    PASSWORD_KEY,
    SERVER_SCOPE,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    resolve_server_password,
)
from issuevault.config.metadata import (
    BACKEND_DOLT,
    ProjectMetadata,
    load_metadata,
    metadata_path,
    save_metadata,
)
from issuevault.config.settings import (
    ConfigurationError,
    Settings,
    find_project_dir,
    get_config_path,
    load_config,
    save_config,
    set_config_value,
)

TEST_ITERATIONS = 1000
PASSPHRASE = "correct horse battery"


class ConfigTestCase(unittest.TestCase):
    """Runs each test with a temp directory and no ISSUEVAULT_* variables."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        env = {k: v for k, v in os.environ.items() if not k.startswith("ISSUEVAULT_")}
        patcher = patch.dict(os.environ, env, clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestLoadConfig(ConfigTestCase):
    """Tests for loading config.yaml."""

    def test_missing_file_gives_defaults(self) -> None:
        settings = load_config(self.temp_dir / "config.yaml")

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.sync.mode, "portable")
        self.assertIsNone(settings.backup.enabled)
        self.assertEqual(settings.backup.interval_minutes, 15)

    def test_values_read(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text(
            "issuevault:\n  log_level: debug\n"
            "sync:\n  mode: native\n"
            "backup:\n  enabled: true\n  interval_minutes: 30\n  git_repo: ~/backups\n"
        )

        settings = load_config(path)

        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.sync.mode, "native")
        self.assertTrue(settings.backup.enabled)
        self.assertEqual(settings.backup.interval_minutes, 30)
        self.assertEqual(settings.backup.git_repo, "~/backups")

    def test_invalid_yaml(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text("sync: [unclosed\n")
        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_invalid_values(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text("sync:\n  mode: carrier-pigeon\n")
        with self.assertRaises(ConfigurationError):
            load_config(path)
        path.write_text("backup:\n  interval_minutes: soon\n")
        with self.assertRaises(ConfigurationError):
            load_config(path)
        path.write_text("backup:\n  interval_minutes: -5\n")
        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_environment_overrides(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text("backup:\n  enabled: true\n")
        os.environ["ISSUEVAULT_BACKUP_ENABLED"] = "off"
        os.environ["ISSUEVAULT_BACKUP_INTERVAL"] = "5"
        os.environ["ISSUEVAULT_SYNC_MODE"] = "NATIVE"

        settings = load_config(path)

        self.assertFalse(settings.backup.enabled)
        self.assertEqual(settings.backup.interval_minutes, 5)
        self.assertEqual(settings.sync.mode, "native")

    def test_invalid_environment_value(self) -> None:
        os.environ["ISSUEVAULT_BACKUP_GIT_PUSH"] = "maybe"
        with self.assertRaises(ConfigurationError):
            load_config(self.temp_dir / "config.yaml")

    def test_save_and_reload(self) -> None:
        path = self.temp_dir / "config.yaml"
        settings = Settings()
        settings.backup.git_push = False

        save_config(settings, path)

        self.assertFalse(load_config(path).backup.git_push)
        self.assertNotIn("enabled", yaml.safe_load(path.read_text())["backup"])


class TestSetConfigValue(ConfigTestCase):
    """Tests for dotted single-key updates."""

    def test_preserves_other_keys(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text("# user comment\nbackup:\n  interval_minutes: 30\ncustom: kept\n")

        set_config_value(path, "sync.mode", "native")

        data = yaml.safe_load(path.read_text())
        self.assertEqual(data["sync"]["mode"], "native")
        self.assertEqual(data["backup"]["interval_minutes"], 30)
        self.assertEqual(data["custom"], "kept")

    def test_creates_missing_file(self) -> None:
        path = self.temp_dir / "nested" / "config.yaml"
        set_config_value(path, "sync.mode", "native")
        self.assertEqual(load_config(path).sync.mode, "native")

    def test_non_mapping_intermediate(self) -> None:
        path = self.temp_dir / "config.yaml"
        path.write_text("sync: native\n")
        with self.assertRaises(ConfigurationError):
            set_config_value(path, "sync.mode", "native")


class TestProjectDir(ConfigTestCase):
    """Tests for locating the project directory."""

    def test_walks_up(self) -> None:
        project = self.temp_dir / ".issuevault"
        project.mkdir()
        nested = self.temp_dir / "src" / "pkg"
        nested.mkdir(parents=True)

        self.assertEqual(find_project_dir(nested), project.resolve())

    def test_environment_wins(self) -> None:
        os.environ["ISSUEVAULT_DIR"] = str(self.temp_dir / "elsewhere")
        self.assertEqual(find_project_dir(self.temp_dir), self.temp_dir / "elsewhere")

    def test_not_found(self) -> None:
        self.assertIsNone(find_project_dir(self.temp_dir))

    def test_config_path_override(self) -> None:
        os.environ["ISSUEVAULT_CONFIG"] = str(self.temp_dir / "custom.yaml")
        self.assertEqual(get_config_path(self.temp_dir), self.temp_dir / "custom.yaml")


class TestMetadata(ConfigTestCase):
    """Tests for metadata.json."""

    def test_missing_file_is_legacy_project(self) -> None:
        metadata = load_metadata(self.temp_dir)
        self.assertFalse(metadata.is_target_backend)
        self.assertEqual(metadata.effective_port(), 0)

    def test_round_trip_keeps_unknown_keys(self) -> None:
        metadata_path(self.temp_dir).write_text(
            json.dumps({"backend": "dolt", "target_database": "proj", "owner_team": "infra"})
        )

        metadata = load_metadata(self.temp_dir)
        save_metadata(self.temp_dir, metadata)

        data = json.loads(metadata_path(self.temp_dir).read_text())
        self.assertEqual(data["owner_team"], "infra")
        self.assertNotIn("pending_migration", data)

    def test_target_backend_defaults_port(self) -> None:
        self.assertEqual(ProjectMetadata(backend=BACKEND_DOLT).effective_port(), 3307)
        self.assertEqual(ProjectMetadata(backend=BACKEND_DOLT, server_port=3400).effective_port(), 3400)

    def test_port_environment_override(self) -> None:
        os.environ["ISSUEVAULT_SERVER_PORT"] = "4000"
        self.assertEqual(ProjectMetadata().effective_port(), 4000)
        os.environ["ISSUEVAULT_SERVER_PORT"] = "four"
        with self.assertRaises(ConfigurationError):
            ProjectMetadata().effective_port()

    def test_invalid_backend_not_saved(self) -> None:
        with self.assertRaises(ConfigurationError):
            save_metadata(self.temp_dir, ProjectMetadata(backend="postgres"))
        self.assertFalse(metadata_path(self.temp_dir).exists())

    def test_invalid_json(self) -> None:
        metadata_path(self.temp_dir).write_text("{")
        with self.assertRaises(ConfigurationError):
            load_metadata(self.temp_dir)


class TestCredentialStore(ConfigTestCase):
    """Tests for CredentialStore."""

    def setUp(self) -> None:
        super().setUp()
        self.store = CredentialStore(self.temp_dir, iterations=TEST_ITERATIONS)

    def test_initialize_creates_files(self) -> None:
        self.store.initialize(PASSPHRASE)

        self.assertTrue(self.store.salt_path.exists())
        self.assertTrue(self.store.credentials_path.exists())
        self.assertTrue(self.store.is_unlocked())

    def test_short_passphrase_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.initialize("short")

    def test_set_get_across_sessions(self) -> None:
        """Test that a stored password survives lock and unlock."""
        self.store.initialize(PASSPHRASE)
        self.store.set_credential(SERVER_SCOPE, PASSWORD_KEY, "s3cret")
        self.store.lock()

        reopened = CredentialStore(self.temp_dir, iterations=TEST_ITERATIONS)
        reopened.unlock(PASSPHRASE)

        self.assertEqual(reopened.get_credential(SERVER_SCOPE, PASSWORD_KEY), "s3cret")

    def test_secret_not_on_disk_in_plaintext(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_credential(SERVER_SCOPE, PASSWORD_KEY, "s3cret-value")
        self.assertNotIn(b"s3cret-value", self.store.credentials_path.read_bytes())

    def test_wrong_passphrase(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.lock()
        with self.assertRaises(InvalidPassphraseError):
            self.store.unlock("not the passphrase")

    def test_locked_and_uninitialized(self) -> None:
        with self.assertRaises(CredentialStoreNotInitializedError):
            self.store.unlock(PASSPHRASE)
        self.store.initialize(PASSPHRASE)
        self.store.lock()
        with self.assertRaises(CredentialStoreLockedError):
            self.store.get_credential(SERVER_SCOPE, PASSWORD_KEY)

    def test_delete_credential(self) -> None:
        self.store.initialize(PASSPHRASE)
        self.store.set_credential(SERVER_SCOPE, PASSWORD_KEY, "x")
        self.store.delete_credential(SERVER_SCOPE, PASSWORD_KEY)
        self.assertFalse(self.store.has_credential(SERVER_SCOPE, PASSWORD_KEY))
        with self.assertRaises(CredentialNotFoundError):
            self.store.delete_credential(SERVER_SCOPE, PASSWORD_KEY)


class TestResolveServerPassword(ConfigTestCase):
    """Tests for server password resolution order."""

    def test_environment_password_first(self) -> None:
        os.environ["ISSUEVAULT_SERVER_PASSWORD"] = "from-env"
        self.assertEqual(resolve_server_password(self.temp_dir), "from-env")

    def test_store_used_with_passphrase(self) -> None:
        store = CredentialStore(self.temp_dir, iterations=TEST_ITERATIONS)
        store.initialize(PASSPHRASE)
        store.set_credential(SERVER_SCOPE, PASSWORD_KEY, "from-store")
        store.lock()
        os.environ["ISSUEVAULT_PASSPHRASE"] = PASSPHRASE

        password = resolve_server_password(self.temp_dir, store)

        self.assertEqual(password, "from-store")
        self.assertFalse(store.is_unlocked())

    def test_empty_without_passphrase(self) -> None:
        self.assertEqual(resolve_server_password(self.temp_dir), "")


if __name__ == "__main__":
    unittest.main()
