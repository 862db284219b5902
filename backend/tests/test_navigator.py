"""
Tests for the branch navigator controls.
"""
import asyncio

import pytest

from conftest import make_branches, make_versions
from threadline.models import ResumeResult
from threadline.navigation import BranchNavigator, BranchVersionStore
from threadline.streaming import ResumableStreamClient


@pytest.fixture
def projection(fake_store):
    return BranchVersionStore(fake_store)


@pytest.fixture
def notices():
    return []


@pytest.fixture
def navigator(projection, notices):
    return BranchNavigator("msg-1", projection, notify=notices.append)


async def load(fake_store, projection, branches=1, versions=0, active_branch=0, active_version=0):
    fake_store.branches["msg-1"] = make_branches("msg-1", branches, active=active_branch)
    fake_store.versions["msg-1"] = make_versions("msg-1", versions, active=active_version)
    await projection.refresh("msg-1")


class TestRendering:
    """What the control shows."""

    async def test_hidden_for_single_branch(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=1, versions=1)

        view = navigator.render()

        assert view.branch_label is None
        assert view.version_label is None
        assert not view.visible

    async def test_labels_are_one_based(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=3, versions=2, active_branch=1, active_version=1)

        view = navigator.render()

        assert view.branch_label == "2/3"
        assert view.version_label == "2/2"
        assert view.visible
        assert navigator.branch_position() == (1, 3)

    async def test_single_step_is_noop(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=1)

        assert await navigator.next_branch() is False
        assert await navigator.prev_version() is False
        assert fake_store.switch_calls == []


class TestStepping:
    """Prev/next controls."""

    async def test_next_wraps_to_first(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=3, active_branch=2)

        assert await navigator.next_branch() is True
        assert fake_store.switch_calls == [("msg-1", "msg-1-b0")]

    async def test_prev_wraps_to_last(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=3, active_branch=0)

        await navigator.prev_branch()
        assert fake_store.switch_calls == [("msg-1", "msg-1-b2")]

    async def test_prev_version_scenario(self, fake_store, projection, navigator):
        """v2 active of [v1, v2]: prev issues a switch to v1, shown once the store reports it."""
        await load(fake_store, projection, branches=1, versions=2, active_version=1)
        assert navigator.render().version_label == "2/2"

        assert await navigator.prev_version() is True
        assert fake_store.switch_calls == [("msg-1", "msg-1-v1")]
        assert navigator.render().version_label == "2/2"

        await projection.refresh("msg-1")
        assert navigator.render().version_label == "1/2"

    async def test_refresh_after_switch(self, fake_store, projection):
        navigator = BranchNavigator("msg-1", projection, refresh_after_switch=True)
        await load(fake_store, projection, branches=2, active_branch=0)

        await navigator.next_branch()

        assert navigator.render().branch_label == "2/2"

    async def test_switch_to_branch_by_id(self, fake_store, projection, navigator):
        await load(fake_store, projection, branches=3)

        assert await navigator.switch_to_branch("msg-1-b1") is True
        assert fake_store.switch_calls == [("msg-1", "msg-1-b1")]

    async def test_switch_to_version_by_id(self, fake_store, projection, navigator):
        await load(fake_store, projection, versions=3)

        assert await navigator.switch_to_version("msg-1-v3") is True
        assert fake_store.switch_calls == [("msg-1", "msg-1-v3")]


class TestFailures:
    """Busy and not-found handling."""

    async def test_busy_navigation_is_dropped_silently(self, fake_store, projection, navigator, notices):
        await load(fake_store, projection, branches=3)
        fake_store.switch_gate = asyncio.Event()

        first = asyncio.create_task(navigator.next_branch())
        await asyncio.sleep(0)
        assert navigator.is_loading
        assert navigator.render().is_loading

        assert await navigator.next_branch() is False
        assert await navigator.switch_to_version("msg-1-v1") is False

        fake_store.switch_gate.set()
        assert await first is True
        assert len(fake_store.switch_calls) == 1
        assert notices == []

    async def test_missing_target_notifies_and_refreshes(self, fake_store, projection, navigator, notices):
        await load(fake_store, projection, branches=2)
        # Branch deleted on the server after the projection was loaded
        fake_store.branches["msg-1"] = make_branches("msg-1", 1)
        fetches = len(fake_store.fetches)

        assert await navigator.next_branch() is False

        assert len(notices) == 1
        assert notices[0].startswith("Failed to switch")
        assert len(fake_store.fetches) == fetches + 1
        assert navigator.render().branch_label is None

    async def test_unknown_branch_id(self, fake_store, projection, navigator, notices):
        await load(fake_store, projection, branches=2)

        assert await navigator.switch_to_branch("branch-gone") is False
        assert fake_store.switch_calls == []
        assert len(notices) == 1

    async def test_no_active_branch(self, fake_store, projection, navigator, notices):
        fake_store.branches["msg-1"] = [
            b.model_copy(update={"is_active": False}) for b in make_branches("msg-1", 2)
        ]
        await projection.refresh("msg-1")

        assert await navigator.next_branch() is False
        assert len(notices) == 1


class TestStreamInteraction:
    """Navigation supersedes an in-progress stream."""

    @pytest.fixture
    def streams(self, fake_store):
        client = ResumableStreamClient(fake_store, resume_interval=10)
        yield client
        client.close()

    async def test_branch_switch_cancels_stream(self, fake_store, projection, streams):
        navigator = BranchNavigator("msg-1", projection, streams=streams)
        await load(fake_store, projection, branches=2)
        streams.activate("msg-1")

        await navigator.next_branch()

        assert not streams.is_active("msg-1")

    async def test_version_switch_to_other_content_cancels_stream(self, fake_store, projection, streams):
        navigator = BranchNavigator("msg-1", projection, streams=streams)
        await load(fake_store, projection, versions=2, active_version=1)
        fake_store.script("msg-1", ResumeResult(delta="partial", new_position=7))
        streams.activate("msg-1")
        await asyncio.sleep(0.01)

        await navigator.prev_version()

        assert not streams.is_active("msg-1")

    async def test_version_switch_to_same_content_keeps_stream(self, fake_store, projection, streams):
        navigator = BranchNavigator("msg-1", projection, streams=streams)
        await load(fake_store, projection, versions=2, active_version=1)
        fake_store.script("msg-1", ResumeResult(delta="answer 1", new_position=8))
        streams.activate("msg-1")
        await asyncio.sleep(0.01)

        await navigator.prev_version()

        assert streams.is_active("msg-1")

    async def test_edit_creates_branch(self, fake_store, projection, streams):
        navigator = BranchNavigator("msg-1", projection, streams=streams, refresh_after_switch=True)
        await load(fake_store, projection, branches=1)

        new_branch_id = await navigator.edit("What is Rust?")

        assert new_branch_id == "msg-1-b1"
        assert fake_store.edits == [("msg-1", "What is Rust?")]
        assert navigator.render().branch_label == "2/2"

    async def test_retry_restarts_stream(self, fake_store, projection, streams):
        navigator = BranchNavigator("msg-1", projection, streams=streams, refresh_after_switch=True)
        await load(fake_store, projection, versions=1)
        old = streams.activate("msg-1")

        new_version_id = await navigator.retry("claude-3")

        assert new_version_id == "msg-1-v2"
        assert fake_store.retries == [("msg-1", "claude-3")]
        assert streams.sessions["msg-1"].generation != old.generation
        assert navigator.render().version_label == "2/2"
