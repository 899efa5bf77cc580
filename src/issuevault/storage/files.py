"""
File helpers shared by the migration and backup code.

All durable state files are replaced atomically: data is written to a
temporary file in the destination directory and then renamed over the
target, so a reader sees either the old or the new content.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_bytes(path: Path, data: bytes, mode: int | None = None) -> None:
    """
    Write bytes to a file atomically using temp file + rename.

    Args:
        path: Destination file.
        data: Content to write.
        mode: Optional permission bits applied before the rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def atomic_write_json(path: Path, data: Any, indent: int | None = 2) -> None:
    """Serialize data as JSON and write it atomically."""
    text = json.dumps(data, indent=indent, sort_keys=True, default=str)
    atomic_write_bytes(path, (text + "\n").encode("utf-8"))


def encode_jsonl(rows: Iterable[dict[str, Any]]) -> bytes:
    """Encode rows as JSON lines with sorted keys."""
    lines = [json.dumps(row, sort_keys=True, ensure_ascii=False) for row in rows]
    if not lines:
        return b""
    return ("\n".join(lines) + "\n").encode("utf-8")


def atomic_write_jsonl(path: Path, rows: Iterable[dict[str, Any]]) -> None:
    """Replace a JSONL file with the given rows."""
    atomic_write_bytes(path, encode_jsonl(rows))


def atomic_append_jsonl(path: Path, rows: list[dict[str, Any]]) -> None:
    """
    Append rows to a JSONL file without exposing a half-written file.

    The existing file is copied to a temporary file, the new rows are
    appended to the copy, and the copy is renamed over the original.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "wb") as out:
            if path.exists():
                with open(path, "rb") as existing:
                    shutil.copyfileobj(existing, out)
                    # Guard against a previous writer leaving no trailing newline
                    if out.tell() > 0:
                        existing.seek(-1, os.SEEK_END)
                        if existing.read(1) != b"\n":
                            out.write(b"\n")
            out.write(encode_jsonl(rows))
            out.flush()
            os.fsync(out.fileno())
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_json(path: Path) -> Any:
    """Read a JSON document."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def read_jsonl(path: Path) -> Iterator[tuple[int, dict[str, Any] | None, str | None]]:
    """
    Iterate over a JSONL file.

    Yields:
        Tuples of (line_number, parsed_object, error). Blank lines are
        skipped; lines that do not hold a JSON object yield an error string
        instead of an object.
    """
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError as e:
                yield line_number, None, f"invalid JSON: {e}"
                continue
            if not isinstance(value, dict):
                yield line_number, None, "line is not a JSON object"
                continue
            yield line_number, value, None
