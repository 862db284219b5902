"""
Tests for stream position tracking.
"""
import pytest

from threadline.errors import StreamError, StreamErrorKind
from threadline.streaming import PositionTracker, merge


class TestMerge:
    """Merging resumed deltas into a buffer."""

    def test_appends_delta(self):
        assert merge("Hello ", 6, "world", 11) == ("Hello world", 11)

    def test_empty_delta_at_same_position(self):
        assert merge("Hello", 5, "", 5) == ("Hello", 5)

    def test_backwards_position_is_rejected(self):
        with pytest.raises(StreamError) as exc_info:
            merge("Hello", 5, "x", 3)
        assert exc_info.value.kind is StreamErrorKind.NON_MONOTONIC_POSITION


class TestPositionTracker:
    """Stateful tracker for one message."""

    def test_starts_empty(self):
        tracker = PositionTracker("msg-1")
        assert tracker.buffer == ""
        assert tracker.position == 0

    def test_apply_accumulates(self):
        tracker = PositionTracker("msg-1")
        tracker.apply("Hello ", 6)
        assert tracker.apply("world", 11) == "Hello world"
        assert tracker.position == 11

    def test_rejected_merge_leaves_state_untouched(self):
        tracker = PositionTracker("msg-1")
        tracker.apply("abc", 3)
        with pytest.raises(StreamError):
            tracker.apply("z", 2)
        assert tracker.buffer == "abc"
        assert tracker.position == 3

    def test_reset(self):
        tracker = PositionTracker("msg-1")
        tracker.apply("abc", 3)
        tracker.reset()
        assert (tracker.buffer, tracker.position) == ("", 0)
