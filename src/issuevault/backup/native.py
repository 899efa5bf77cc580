"""
Native Dolt backup destinations.

Wraps the engine's own ``DOLT_BACKUP`` procedure. Unlike the portable JSONL
backup, a native backup carries the full commit history and is pushed by
the engine itself, atomically: a failed sync leaves the previous backup
intact. This module registers the destination, triggers syncs, and records
what happened for ``issuevault backup status``.

Files (in the project directory):
    native-backup.json          destination URL, name, creation time
    native-backup-state.json    last sync time and duration

The status also reports the size of the local Dolt data directory
(``dolt/`` in the project directory) and, for ``file://`` destinations,
the size of the backup on disk.

Usage:
    manager = NativeBackupManager(project_dir)
    manager.init_destination(store, "~/Dropbox/issues-backup")
    manager.sync(store)
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from issuevault.best_effort import run_best_effort
from issuevault.storage.files import atomic_write_json, read_json
from issuevault.storage.models import format_timestamp, parse_timestamp
from issuevault.storage.target_store import TargetStore, TargetStoreError

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_NAME = "default"
NATIVE_CONFIG_FILE = "native-backup.json"
NATIVE_STATE_FILE = "native-backup-state.json"
DOLT_DATA_DIR = "dolt"

REMOTE_URL_PREFIXES = ("https://", "http://", "file://", "aws://", "gs://")


class NativeBackupError(Exception):
    """Error registering or syncing a native backup."""

    pass


class NativeBackupNotConfiguredError(NativeBackupError):
    """No native backup destination is registered."""

    pass


@dataclass
class NativeBackupConfig:
    backup_url: str
    backup_name: str = DEFAULT_BACKUP_NAME
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_url": self.backup_url,
            "backup_name": self.backup_name,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NativeBackupConfig:
        return cls(
            backup_url=str(data.get("backup_url", "")),
            backup_name=str(data.get("backup_name") or DEFAULT_BACKUP_NAME),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class NativeBackupState:
    last_sync: datetime | None = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"last_sync": format_timestamp(self.last_sync), "duration": self.duration}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NativeBackupState:
        return cls(
            last_sync=parse_timestamp(data.get("last_sync")),
            duration=float(data.get("duration") or 0.0),
        )


def directory_size(path: Path) -> int:
    """Total size in bytes of the files below path."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(str(path)):
        for filename in filenames:
            total += (Path(dirpath) / filename).stat().st_size
    return total


def format_size(size: int) -> str:
    """Human-readable size, e.g. ``2.50 MB``."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024:
            break
    return f"{value:.2f} {unit}"


def size_info(size: int | None) -> dict[str, Any] | None:
    if size is None:
        return None
    return {"bytes": size, "human": format_size(size)}


def resolve_backup_url(raw: str) -> str:
    """
    Turn a user-supplied path or URL into a backup URL.

    Remote and ``file://`` URLs pass through unchanged. Anything else is a
    filesystem path: ``~`` is expanded and the path made absolute with a
    ``file://`` prefix.
    """
    if raw.startswith(REMOTE_URL_PREFIXES):
        return raw
    if raw.startswith("~/"):
        raw = os.path.expanduser(raw)
    return "file://" + os.path.abspath(raw)


class NativeBackupManager:
    """Registers and syncs the engine's native backup destination."""

    def __init__(
        self,
        project_dir: Path,
        clock: Callable[[], datetime] | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.config_path = self.project_dir / NATIVE_CONFIG_FILE
        self.state_path = self.project_dir / NATIVE_STATE_FILE
        self.data_dir = self.project_dir / DOLT_DATA_DIR
        self.clock = clock or (lambda: datetime.now(UTC))
        self.timer = timer

    def init_destination(
        self,
        store: TargetStore,
        raw: str,
        name: str = DEFAULT_BACKUP_NAME,
    ) -> NativeBackupConfig:
        """
        Register a backup destination with the engine.

        An existing destination with the same name is replaced.

        Raises:
            NativeBackupError: If the engine refuses the destination.
        """
        url = resolve_backup_url(raw)
        try:
            store.backup_add(name, url)
        except TargetStoreError as e:
            if "already exists" not in str(e).lower():
                raise NativeBackupError(f"Failed to add backup destination: {e}") from e
            run_best_effort("Remove existing backup destination", store.backup_remove, name)
            try:
                store.backup_add(name, url)
            except TargetStoreError as e2:
                raise NativeBackupError(f"Failed to update backup destination: {e2}") from e2

        config = NativeBackupConfig(backup_url=url, backup_name=name, created_at=self.clock())
        run_best_effort(
            "Saving native backup config",
            atomic_write_json,
            self.config_path,
            config.to_dict(),
        )
        logger.info(f"Native backup destination {name!r} set to {url}")
        return config

    def sync(self, store: TargetStore, name: str | None = None) -> NativeBackupState:
        """
        Push the database to the backup destination.

        Pending changes are committed first so they are included.

        Raises:
            NativeBackupNotConfiguredError: If no destination is registered.
            NativeBackupError: If the sync fails.
        """
        if name is None:
            config = self.load_config()
            name = config.backup_name if config else DEFAULT_BACKUP_NAME

        run_best_effort("Committing pending changes", store.commit, "backup sync")

        start = self.timer()
        try:
            store.backup_sync(name)
        except TargetStoreError as e:
            message = str(e).lower()
            if "no backup" in message or "not found" in message:
                raise NativeBackupNotConfiguredError(
                    "No backup destination configured. Run 'issuevault backup init <path>' first."
                ) from e
            raise NativeBackupError(f"Backup sync failed: {e}") from e
        duration = self.timer() - start

        state = NativeBackupState(last_sync=self.clock(), duration=round(duration, 3))
        run_best_effort(
            "Saving native backup state",
            atomic_write_json,
            self.state_path,
            state.to_dict(),
        )
        logger.info(f"Native backup {name!r} synced in {duration:.3f}s")
        return state

    def load_config(self) -> NativeBackupConfig | None:
        if not self.config_path.exists():
            return None
        try:
            return NativeBackupConfig.from_dict(read_json(self.config_path))
        except (OSError, ValueError, AttributeError) as e:
            raise NativeBackupError(f"Cannot read {self.config_path}: {e}") from e

    def load_state(self) -> NativeBackupState | None:
        if not self.state_path.exists():
            return None
        try:
            return NativeBackupState.from_dict(read_json(self.state_path))
        except (OSError, ValueError, AttributeError) as e:
            raise NativeBackupError(f"Cannot read {self.state_path}: {e}") from e

    def status(self) -> dict[str, Any]:
        """Configured destination and last sync, for display."""
        config = self.load_config()
        if config is None:
            return {"configured": False}
        result: dict[str, Any] = {"configured": True, **config.to_dict()}
        state = self.load_state()
        if state is not None:
            result["last_sync"] = format_timestamp(state.last_sync)
            result["sync_duration"] = state.duration
        backup_size = self.backup_size(config)
        if backup_size is not None:
            result["backup_size"] = size_info(backup_size)
        return result

    def database_size(self) -> int | None:
        """Bytes used by the local Dolt data directory, None when there is none."""
        if not self.data_dir.is_dir():
            return None
        return directory_size(self.data_dir)

    def backup_size(self, config: NativeBackupConfig) -> int | None:
        """Bytes used by a file:// destination; remote destinations are not measured."""
        if not config.backup_url.startswith("file://"):
            return None
        path = Path(config.backup_url[len("file://"):])
        if not path.is_dir():
            return None
        return directory_size(path)
