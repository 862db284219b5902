"""
Error taxonomy shared by the stream client, the branch/version store and the HTTP transport.
"""
from enum import Enum
from typing import Optional


class ThreadlineError(Exception):
    """Base class for all threadline errors."""


class TransportError(ThreadlineError):
    """Network failure or error status from the external store. Recoverable via manual retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamErrorKind(str, Enum):
    NON_MONOTONIC_POSITION = "non_monotonic_position"


class StreamError(ThreadlineError):
    """Protocol violation while merging stream content. Fatal to the session."""

    def __init__(self, kind: StreamErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class NavigationErrorKind(str, Enum):
    TARGET_NOT_FOUND = "target_not_found"
    BUSY = "busy"


class NavigationError(ThreadlineError):
    """A branch or version switch could not be issued."""

    def __init__(self, kind: NavigationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
