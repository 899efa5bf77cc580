"""
Git sync for the portable backup directory.

After an export the backup directory can be committed and pushed so the
JSONL files leave the machine. git is driven as an external command. Pushing
is best-effort: a failed or slow push (bounded by its own timeout) is logged
as a warning and never fails the backup that triggered it.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from issuevault.backup.manager import BackupError
from issuevault.best_effort import run_best_effort

logger = logging.getLogger(__name__)

GIT_COMMAND_TIMEOUT_SECONDS = 60
GIT_PUSH_TIMEOUT_SECONDS = 60
GIT_ROOT_TIMEOUT_SECONDS = 5


class GitBackupError(BackupError):
    """A git step of the backup failed."""

    pass


@dataclass
class GitBackupResult:
    """What git_backup() did."""

    committed: bool = False
    pushed: bool = False
    push_warning: str | None = None


def _git(cwd: Path, *args: str, timeout: float = GIT_COMMAND_TIMEOUT_SECONDS) -> str:
    """Run a git command and return its output, raising GitBackupError on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise GitBackupError("git is not installed or not on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise GitBackupError(f"git {args[0]} timed out after {timeout}s") from e

    if result.returncode != 0:
        output = (result.stderr or result.stdout).strip()
        raise GitBackupError(f"git {args[0]} failed: {output}")
    return result.stdout


def find_git_root(path: Path, timeout: float = GIT_ROOT_TIMEOUT_SECONDS) -> Path:
    """
    Find the top level of the git repository containing path.

    Raises:
        GitBackupError: If path is not inside a repository or git times out.
    """
    path = Path(path)
    cwd = path if path.is_dir() else path.parent
    output = _git(cwd, "rev-parse", "--show-toplevel", timeout=timeout)
    return Path(output.strip())


def resolve_git_repo(git_repo: str) -> Path | None:
    """
    Resolve a configured backup repository.

    Returns:
        The repository path (``~`` expanded) if it holds a ``.git``
        directory, otherwise None.
    """
    if not git_repo:
        return None
    repo = Path(os.path.expanduser(git_repo))
    if not (repo / ".git").exists():
        logger.debug(f"Configured backup.git_repo {repo} is not a git repository")
        return None
    return repo


def has_git_remote(path: Path) -> bool:
    """True if path is inside a git repository with at least one remote."""
    try:
        root = find_git_root(path)
        return bool(_git(root, "remote", timeout=GIT_ROOT_TIMEOUT_SECONDS).strip())
    except GitBackupError as e:
        logger.debug(f"No git remote for {path}: {e}")
        return False


def git_backup(
    backup_dir: Path,
    git_repo: str = "",
    push_timeout: float = GIT_PUSH_TIMEOUT_SECONDS,
    clock: Callable[[], datetime] | None = None,
) -> GitBackupResult:
    """
    Commit the backup directory and push it.

    Args:
        backup_dir: Directory holding the JSONL files.
        git_repo: Repository to use instead of the one containing backup_dir.
        push_timeout: Timeout for ``git push``.
        clock: Source of the time used in the commit message.

    Returns:
        GitBackupResult. A push failure is reported in push_warning.

    Raises:
        GitBackupError: If the directory is not in a repository, or git add
                        or git commit fails.
    """
    backup_dir = Path(backup_dir).resolve()
    repo = resolve_git_repo(git_repo)
    if repo is None:
        try:
            repo = find_git_root(backup_dir)
        except GitBackupError as e:
            raise GitBackupError(
                f"Backup directory {backup_dir} is not inside a git repository: {e}"
            ) from e

    try:
        rel_dir = str(backup_dir.relative_to(repo.resolve()))
    except ValueError:
        rel_dir = str(backup_dir)

    _git(repo, "add", "-f", rel_dir)

    try:
        diff = subprocess.run(
            ["git", "diff", "--cached", "--quiet", "--", rel_dir],
            cwd=str(repo),
            capture_output=True,
            timeout=GIT_COMMAND_TIMEOUT_SECONDS,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise GitBackupError("git diff timed out") from e
    if diff.returncode == 0:
        logger.debug("No backup changes to commit")
        return GitBackupResult()
    if diff.returncode != 1:
        raise GitBackupError(f"git diff failed: {diff.stderr.decode(errors='replace').strip()}")

    now = (clock or (lambda: datetime.now(UTC)))()
    message = f"issuevault: backup {now.astimezone(UTC).strftime('%Y-%m-%d %H:%M')}"
    _git(repo, "commit", "-m", message, "--", rel_dir)
    logger.info(f"Committed backup to git: {message}")

    outcome = run_best_effort("Backup git push", _git, repo, "push", timeout=push_timeout)
    return GitBackupResult(committed=True, pushed=outcome.succeeded, push_warning=outcome.warning)
