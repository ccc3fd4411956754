"""
Error kinds raised by the sync pipeline.

Per-line and per-file errors are collected into a ParseOutcome rather than
raised out of a scan; only watcher start/stop failures reach the caller.
"""

from pathlib import Path
from typing import Optional, Union


class MemqSyncError(Exception):
    """Base class for all sync pipeline errors."""


class JSONLSyntaxError(MemqSyncError):
    """A line could not be parsed as a JSON object."""

    def __init__(self, line_number: Optional[int], reason: str):
        self.line_number = line_number
        self.reason = reason
        location = f" at line {line_number}" if line_number else ""
        super().__init__(f"Invalid JSON{location}: {reason}")


class MessageValidationError(MemqSyncError):
    """A parsed record is missing a required field or has the wrong shape."""


class FileAccessError(MemqSyncError):
    """A session file could not be opened or read."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to read file {path}: {reason}")


class DirectoryScanError(MemqSyncError):
    """The projects root or one of its project directories could not be listed."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to scan directory {path}: {reason}")


class WatcherTeardownError(MemqSyncError):
    """Closing the underlying observer failed."""
