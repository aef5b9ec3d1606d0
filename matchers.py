"""Text matchers for yt-dlp output."""
from __future__ import annotations

import re
from typing import Iterable, Optional, Pattern, Sequence, Tuple

from errors import ErrorKind

# yt-dlp prints "[download]  42.3% of 3.21MiB at 1.2MiB/s ETA 00:02" with --newline
PROGRESS_PATTERN = re.compile(r"\[download\]\s+(\d{1,3}(?:\.\d+)?)%")

FATAL_PATTERNS: Tuple[Tuple[str, ErrorKind, str], ...] = (
    ("video unavailable", ErrorKind.UPSTREAM_UNAVAILABLE, "Video unavailable"),
    ("private video", ErrorKind.UPSTREAM_UNAVAILABLE, "This video is private"),
    ("has been removed", ErrorKind.UPSTREAM_UNAVAILABLE, "This video has been removed"),
    (
        "account associated with this video has been terminated",
        ErrorKind.UPSTREAM_UNAVAILABLE,
        "This video has been removed",
    ),
    ("not available in your country", ErrorKind.UPSTREAM_UNAVAILABLE, "This video is not available in your region"),
    ("sign in to confirm your age", ErrorKind.UPSTREAM_UNAVAILABLE, "This video is age-restricted"),
    ("members-only", ErrorKind.UPSTREAM_UNAVAILABLE, "This video is members-only"),
)


class ProgressMatcher:
    def __init__(self, pattern: Pattern[str] = PROGRESS_PATTERN) -> None:
        self.pattern = pattern

    def last_percent(self, text: str) -> Optional[float]:
        """Return the last percentage found in ``text``, or None."""
        value = None
        for match in self.pattern.finditer(text):
            percent = float(match.group(1))
            if percent <= 100:
                value = percent
        return value


class FatalPatternMatcher:
    """Classifies output lines that mean the download cannot succeed."""

    def __init__(self, patterns: Iterable[Tuple[str, ErrorKind, str]] = FATAL_PATTERNS) -> None:
        self.patterns: Sequence[Tuple[str, ErrorKind, str]] = tuple(
            (needle.lower(), kind, message) for needle, kind, message in patterns
        )

    def match(self, text: str) -> Optional[Tuple[ErrorKind, str]]:
        lowered = text.lower()
        for needle, kind, message in self.patterns:
            if needle in lowered:
                return kind, message
        return None
