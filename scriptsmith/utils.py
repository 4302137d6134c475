"""Utility functions for Scriptsmith."""

import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from slugify import slugify as python_slugify

from .errors import GenerationTimeoutError

_WORD_PATTERN = re.compile(r"\S+")


def utc_now() -> datetime:
    """Get current datetime in UTC with timezone info."""
    return datetime.now(timezone.utc)


def slugify(text: str, max_length: int = 100) -> str:
    """Convert text to a URL-friendly slug.

    Args:
        text: The text to convert to a slug.
        max_length: Maximum length of the slug (default: 100).

    Returns:
        A URL-friendly slug version of the text.
    """
    return python_slugify(text, max_length=max_length)


def get_date_string() -> str:
    """Get the current date as a string for filenames.

    Returns:
        Current date in YYYY-MM-DD format.
    """
    return datetime.now().strftime("%Y-%m-%d")


def generate_filename(title: str) -> str:
    """Generate a filename for an exported script.

    Args:
        title: The title of the script.

    Returns:
        A filename in the format 'YYYY-MM-DD-slug.md'.
    """
    slug = slugify(title) or "script"
    return f"{get_date_string()}-{slug}.md"


def count_words(text: Optional[str]) -> int:
    """Count whitespace-separated words."""
    if not text:
        return 0
    return len(_WORD_PATTERN.findall(text))


def word_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the words longer than three characters."""
    words_first = {w for w in first.lower().split() if len(w) > 3}
    words_second = {w for w in second.lower().split() if len(w) > 3}
    union = words_first | words_second
    if not union:
        return 0.0
    return len(words_first & words_second) / len(union)


class Deadline:
    """A monotonic time budget.

    Example:
        deadline = Deadline(270)
        while work_remains:
            deadline.check("generating chunk 3")
            do_work(timeout=deadline.remaining())
    """

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, activity: str = "processing") -> None:
        """Raise GenerationTimeoutError if the budget is spent.

        Args:
            activity: What was about to run, for the error message.

        Raises:
            GenerationTimeoutError: If no time remains.
        """
        if self.expired:
            raise GenerationTimeoutError(
                f"Processing budget of {self.budget_seconds:.0f}s exhausted before {activity}"
            )
