"""
Branch navigator: the view-facing controls for one message.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ..errors import NavigationError, NavigationErrorKind
from ..streaming import ResumableStreamClient
from .store import BranchVersionStore, Direction, next_index

logger = logging.getLogger(__name__)

Notify = Callable[[str], None]


@dataclass(frozen=True)
class NavigatorView:
    """Rendered state. A label is None when that control is hidden (length <= 1)."""
    branch_label: Optional[str]
    version_label: Optional[str]
    is_loading: bool

    @property
    def visible(self) -> bool:
        return self.branch_label is not None or self.version_label is not None


def _label(active_index: int, length: int) -> Optional[str]:
    if length <= 1:
        return None
    return f"{active_index + 1}/{length}"


class BranchNavigator:
    """Prev/next/switch-to controls over one message's branches and versions.

    Switching a message that is streaming cancels its stream session: a branch
    switch always, a version switch when the target content differs.
    """

    def __init__(
        self,
        message_id: str,
        store: BranchVersionStore,
        streams: Optional[ResumableStreamClient] = None,
        notify: Optional[Notify] = None,
        refresh_after_switch: bool = False
    ) -> None:
        self.message_id = message_id
        self.store = store
        self.streams = streams
        self.notify = notify
        self.refresh_after_switch = refresh_after_switch

    @property
    def is_loading(self) -> bool:
        return self.store.is_loading(self.message_id)

    def branch_position(self) -> Tuple[int, int]:
        projection = self.store.branches_for(self.message_id)
        return projection.active_index, projection.length

    def version_position(self) -> Tuple[int, int]:
        projection = self.store.versions_for(self.message_id)
        return projection.active_index, projection.length

    def render(self) -> NavigatorView:
        return NavigatorView(
            branch_label=_label(*self.branch_position()),
            version_label=_label(*self.version_position()),
            is_loading=self.is_loading
        )

    async def next_branch(self) -> bool:
        return await self._step_branch(Direction.NEXT)

    async def prev_branch(self) -> bool:
        return await self._step_branch(Direction.PREV)

    async def next_version(self) -> bool:
        return await self._step_version(Direction.NEXT)

    async def prev_version(self) -> bool:
        return await self._step_version(Direction.PREV)

    async def switch_to_branch(self, branch_id: str) -> bool:
        """Switch to a branch by id."""
        index = self.store.branches_for(self.message_id).index_of(branch_id)
        if index < 0:
            return await self._failed(NavigationError(
                NavigationErrorKind.TARGET_NOT_FOUND, f"Branch {branch_id} not found"
            ))
        return await self._switch_branch(index)

    async def switch_to_version(self, version_id: str) -> bool:
        """Switch to a version by id."""
        return await self._switch_version(version_id)

    async def edit(self, new_content: str) -> str:
        """Edit the message; the store appends a new active branch."""
        result = await self.store.store.edit_message(self.message_id, new_content)
        self._cancel_stream()
        await self._after_mutation()
        return result.new_branch_id

    async def retry(self, model: Optional[str] = None) -> str:
        """Retry the message; the store appends a new active version and streams it."""
        result = await self.store.store.retry_message(self.message_id, model)
        if self.streams is not None:
            self.streams.deactivate(self.message_id)
            self.streams.activate(self.message_id)
        await self._after_mutation()
        return result.new_version_id

    async def _step_branch(self, direction: Direction) -> bool:
        if self.is_loading:
            return False
        active_index, length = self.branch_position()
        if length <= 1:
            return False
        if active_index < 0:
            return await self._failed(NavigationError(
                NavigationErrorKind.TARGET_NOT_FOUND, "No active branch found"
            ))
        return await self._switch_branch(next_index(active_index, length, direction))

    async def _step_version(self, direction: Direction) -> bool:
        if self.is_loading:
            return False
        projection = self.store.versions_for(self.message_id)
        if projection.length <= 1:
            return False
        if projection.active_index < 0:
            return await self._failed(NavigationError(
                NavigationErrorKind.TARGET_NOT_FOUND, "No active version found"
            ))
        target = projection.versions[next_index(projection.active_index, projection.length, direction)]
        return await self._switch_version(target.version_id)

    async def _switch_branch(self, index: int) -> bool:
        try:
            target = await self.store.switch_branch(self.message_id, index)
        except NavigationError as exc:
            return await self._failed(exc)
        self._cancel_stream()
        logger.info("Message %s switched to %s", self.message_id, target.name or target.id)
        await self._after_mutation()
        return True

    async def _switch_version(self, version_id: str) -> bool:
        try:
            target = await self.store.switch_version(self.message_id, version_id)
        except NavigationError as exc:
            return await self._failed(exc)
        if self.streams is not None and self.streams.is_active(self.message_id):
            if self.streams.snapshot(self.message_id).content != target.content:
                self._cancel_stream()
        logger.info("Message %s switched to version %s", self.message_id, version_id)
        await self._after_mutation()
        return True

    def _cancel_stream(self) -> None:
        if self.streams is not None and self.streams.is_active(self.message_id):
            logger.info("Cancelling stream of %s superseded by navigation", self.message_id)
            self.streams.deactivate(self.message_id)

    async def _after_mutation(self) -> None:
        if self.refresh_after_switch:
            await self.store.refresh(self.message_id)

    async def _failed(self, error: NavigationError) -> bool:
        if error.kind is NavigationErrorKind.BUSY:
            logger.debug("Dropped navigation for %s: %s", self.message_id, error)
            return False
        logger.warning("Navigation failed for %s: %s", self.message_id, error)
        if self.notify:
            self.notify(f"Failed to switch: {error}")
        # The target may have been deleted, so the fresh lists are allowed to shrink
        await self.store.refresh(self.message_id, reconcile=True)
        return False
