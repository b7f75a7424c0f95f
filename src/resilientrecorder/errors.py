"""
Exceptions surfaced to callers of the recorder.

Outage-related failures (probe timeouts, rejected or crashed captures) are
absorbed by the orchestrator and never raised.
"""

from pathlib import Path
from typing import List, Optional


class RecorderError(Exception):
    """Base class for fatal recording session errors."""


class EmptyInput(RecorderError):
    """No segment was ever recorded, so there is nothing to merge."""

    def __init__(self, message: str = "No recorded segments to merge"):
        super().__init__(message)


class MergeFailed(RecorderError):
    """Concatenation failed. Segment files are left on disk for recovery."""

    def __init__(
        self,
        message: str,
        segments: Optional[List[Path]] = None,
        returncode: Optional[int] = None,
        stderr_tail: str = ""
    ):
        self.segments = list(segments or [])
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if self.segments:
            message = f"{message} (segments kept: {', '.join(str(s) for s in self.segments)})"
        super().__init__(message)
