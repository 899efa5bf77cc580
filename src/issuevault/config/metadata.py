"""
Persisted project metadata.

``metadata.json`` is the authoritative record of which storage backend the
project uses and how to reach it. The rest of the tracker reads it at
startup. Only the migration committer (forward) and the rollback manager
(backward) write it.

Keys this module does not know about are carried through load and save
unchanged so newer tools can add fields without older ones dropping them.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from issuevault.config.settings import ConfigurationError
from issuevault.storage.files import atomic_write_bytes

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"

BACKEND_SQLITE = "sqlite"
BACKEND_DOLT = "dolt"
VALID_BACKENDS = {BACKEND_SQLITE, BACKEND_DOLT}

LEGACY_DATABASE_FILENAME = "issues.db"
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 3307
DEFAULT_SERVER_USER = "root"

_KNOWN_KEYS = (
    "backend",
    "database",
    "target_database",
    "server_host",
    "server_port",
    "server_user",
    "server_tls",
    "pending_migration",
)


@dataclass
class ProjectMetadata:
    """Which backend is authoritative and its connection parameters."""

    backend: str = BACKEND_SQLITE
    database: str = LEGACY_DATABASE_FILENAME
    target_database: str = ""
    server_host: str = DEFAULT_SERVER_HOST
    server_port: int = 0
    server_user: str = DEFAULT_SERVER_USER
    server_tls: bool = False
    pending_migration: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to its on-disk dictionary form."""
        data = dict(self.extra)
        data.update(
            {
                "backend": self.backend,
                "database": self.database,
                "target_database": self.target_database,
                "server_host": self.server_host,
                "server_port": self.server_port,
                "server_user": self.server_user,
                "server_tls": self.server_tls,
            }
        )
        if self.pending_migration is not None:
            data["pending_migration"] = self.pending_migration
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectMetadata:
        """Create metadata from its on-disk dictionary form."""
        try:
            port = int(data.get("server_port") or 0)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid server_port in metadata: {data.get('server_port')!r}") from e
        return cls(
            backend=str(data.get("backend") or BACKEND_SQLITE),
            database=str(data.get("database") or LEGACY_DATABASE_FILENAME),
            target_database=str(data.get("target_database") or ""),
            server_host=str(data.get("server_host") or DEFAULT_SERVER_HOST),
            server_port=port,
            server_user=str(data.get("server_user") or DEFAULT_SERVER_USER),
            server_tls=bool(data.get("server_tls", False)),
            pending_migration=data.get("pending_migration"),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    @property
    def is_target_backend(self) -> bool:
        return self.backend == BACKEND_DOLT

    def effective_port(self) -> int:
        """
        Port to reach the target server on.

        ISSUEVAULT_SERVER_PORT overrides the stored value. When the project
        already uses the target backend and no port is stored, the default
        server port is assumed. Zero means no network target.
        """
        env_port = os.environ.get("ISSUEVAULT_SERVER_PORT")
        if env_port:
            try:
                return int(env_port)
            except ValueError as e:
                raise ConfigurationError(f"Invalid ISSUEVAULT_SERVER_PORT: {env_port!r}") from e
        if self.server_port:
            return self.server_port
        if self.is_target_backend:
            return DEFAULT_SERVER_PORT
        return 0


def metadata_path(project_dir: Path) -> Path:
    return Path(project_dir) / METADATA_FILENAME


def load_metadata(project_dir: Path) -> ProjectMetadata:
    """
    Load project metadata.

    A missing file yields defaults describing a legacy SQLite project.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed.
    """
    path = metadata_path(project_dir)
    if not path.exists():
        return ProjectMetadata()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return ProjectMetadata.from_dict(data)


def save_metadata(project_dir: Path, metadata: ProjectMetadata) -> None:
    """
    Write project metadata atomically.

    Raises:
        ConfigurationError: If the file cannot be written.
    """
    if metadata.backend not in VALID_BACKENDS:
        raise ConfigurationError(f"Invalid backend: {metadata.backend}")
    path = metadata_path(project_dir)
    text = json.dumps(metadata.to_dict(), indent=2, sort_keys=True) + "\n"
    try:
        atomic_write_bytes(path, text.encode("utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot write {path}: {e}") from e
    logger.debug(f"Saved metadata to {path} (backend={metadata.backend})")
