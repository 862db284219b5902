"""Resumable streaming: position tracking and the poll/merge client."""
from .client import ResumableStreamClient, StreamSession, StreamSnapshot, StreamState
from .position import PositionTracker, merge

__all__ = [
    "PositionTracker",
    "ResumableStreamClient",
    "StreamSession",
    "StreamSnapshot",
    "StreamState",
    "merge",
]
