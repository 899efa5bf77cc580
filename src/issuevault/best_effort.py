"""
Best-effort side actions.

Some steps are worth attempting but must never decide the outcome of the
operation that triggers them: writing the human-editable sync mode after the
authoritative metadata has been saved, or pushing the backup directory to a
git remote. Those steps go through run_best_effort(), which logs failures as
warnings and hands them back to the caller instead of raising.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class BestEffortOutcome:
    """Result of a best-effort action."""

    description: str
    succeeded: bool
    value: Any = None
    error: Exception | None = None

    @property
    def warning(self) -> str | None:
        if self.error is None:
            return None
        return f"{self.description} failed: {self.error}"


def run_best_effort(
    description: str,
    func: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> BestEffortOutcome:
    """
    Call func and downgrade any failure to a logged warning.

    Args:
        description: Short label used in the warning.
        func: The action to attempt.
        *args: Positional arguments for func.
        **kwargs: Keyword arguments for func.

    Returns:
        BestEffortOutcome carrying the return value or the error.
    """
    try:
        value = func(*args, **kwargs)
    except Exception as e:
        logger.warning(f"{description} failed: {e}")
        return BestEffortOutcome(description=description, succeeded=False, error=e)
    return BestEffortOutcome(description=description, succeeded=True, value=value)
