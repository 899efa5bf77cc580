"""
Rollback of persisted project metadata.

Before a migration touches ``metadata.json`` the committer captures its exact
bytes (or the fact that it did not exist). If a later step fails before the
point of no return, rollback_metadata() puts those bytes back unchanged,
including server connection fields that were set before the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from issuevault.config.metadata import metadata_path
from issuevault.migration.errors import RollbackError
from issuevault.storage.files import atomic_write_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetadataSnapshot:
    """Raw content of metadata.json at capture time. None means it did not exist."""

    path: Path
    content: bytes | None

    @property
    def existed(self) -> bool:
        return self.content is not None


def capture_metadata(project_dir: Path) -> MetadataSnapshot:
    """
    Capture the current metadata file verbatim.

    Raises:
        RollbackError: If the file exists but cannot be read.
    """
    path = metadata_path(project_dir)
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        content = None
    except OSError as e:
        raise RollbackError(f"Cannot capture {path} for rollback: {e}") from e
    return MetadataSnapshot(path=path, content=content)


def rollback_metadata(project_dir: Path, snapshot: MetadataSnapshot | None) -> None:
    """
    Restore metadata.json to a captured state.

    Args:
        project_dir: Project directory.
        snapshot: State captured by capture_metadata().

    Raises:
        RollbackError: If no snapshot was captured, or the restore fails.
    """
    if snapshot is None:
        raise RollbackError("No captured metadata to roll back to")

    path = metadata_path(project_dir)
    try:
        if snapshot.content is None:
            path.unlink(missing_ok=True)
            logger.info(f"Rolled back {path.name}: removed (it did not exist before migration)")
        else:
            atomic_write_bytes(path, snapshot.content)
            logger.info(f"Rolled back {path.name} to its pre-migration content")
    except OSError as e:
        raise RollbackError(f"Cannot restore {path}: {e}") from e
