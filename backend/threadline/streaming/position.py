"""
Stream position tracking: how much of a message's content is materialized locally.
Pure state, no I/O.
"""
from typing import Tuple

from ..errors import StreamError, StreamErrorKind


def merge(previous_buffer: str, previous_position: int, delta: str, new_position: int) -> Tuple[str, int]:
    """Append a resumed delta to the buffer.

    Positions never move backwards: delivered content is never edited retroactively,
    so a smaller new_position is rejected instead of truncating the buffer.
    """
    if new_position < previous_position:
        raise StreamError(
            StreamErrorKind.NON_MONOTONIC_POSITION,
            f"Position moved backwards from {previous_position} to {new_position}"
        )
    return previous_buffer + delta, new_position


class PositionTracker:
    """Holds (buffer, position) for one message."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self.buffer = ""
        self.position = 0

    def apply(self, delta: str, new_position: int) -> str:
        """Merge a delta; state is untouched if the merge is rejected."""
        self.buffer, self.position = merge(self.buffer, self.position, delta, new_position)
        return self.buffer

    def reset(self) -> None:
        self.buffer = ""
        self.position = 0

    def __repr__(self) -> str:
        return f"PositionTracker({self.message_id!r}, position={self.position})"
