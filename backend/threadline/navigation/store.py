"""
Branch/Version store: projects subscription values into navigable, zero-indexed sequences.

The store never flips isActive locally. After a successful switch the caller waits
for the next subscription value (or refresh()) to see the new active entry.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from ..contracts import ChatStore, Snapshot
from ..errors import NavigationError, NavigationErrorKind
from ..models import Branch, Version
from ..websocket_models import WSBranchesUpdate

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    NEXT = "next"
    PREV = "prev"


def next_index(current: int, length: int, direction: Direction) -> int:
    """Index one step away from current, wrapping circularly.

    next past the last index returns 0 and prev before index 0 returns length - 1.
    Browsing is cyclic on purpose; do not clamp.
    """
    if length <= 0:
        raise ValueError("Cannot navigate an empty sequence")
    step = 1 if direction is Direction.NEXT else -1
    return (current + step) % length


def _active_index(items: Iterable) -> int:
    return next((i for i, item in enumerate(items) if item.is_active), -1)


def _missing(projected: Iterable[str], incoming: Iterable[str]) -> bool:
    return not set(projected) <= set(incoming)


@dataclass(frozen=True)
class BranchProjection:
    branches: Tuple[Branch, ...] = ()
    active_index: int = -1

    @property
    def length(self) -> int:
        return len(self.branches)

    @property
    def active(self) -> Optional[Branch]:
        return self.branches[self.active_index] if self.active_index >= 0 else None

    def index_of(self, branch_id: str) -> int:
        return next((i for i, b in enumerate(self.branches) if b.id == branch_id), -1)


@dataclass(frozen=True)
class VersionProjection:
    versions: Tuple[Version, ...] = ()
    active_index: int = -1

    @property
    def length(self) -> int:
        return len(self.versions)

    @property
    def active(self) -> Optional[Version]:
        return self.versions[self.active_index] if self.active_index >= 0 else None

    def index_of(self, version_id: str) -> int:
        return next((i for i, v in enumerate(self.versions) if v.version_id == version_id), -1)


class BranchVersionStore:
    """In-memory projection of branch trees and version lists, keyed by message id."""

    def __init__(self, store: ChatStore) -> None:
        self.store = store
        self._branches: Dict[str, BranchProjection] = {}
        self._versions: Dict[str, VersionProjection] = {}
        self._pending: Set[str] = set()  # message ids with a switch in flight

    def apply_branches(
        self, message_id: str, branches: Iterable[Branch], reconcile: bool = False
    ) -> BranchProjection:
        """Replace the branch projection. Payload order is not stable; ordinal is.

        Branches only go away through a delete, which the store pushes. A fetched
        value missing an already projected branch is older than the projection and
        is ignored. Pass reconcile=True to accept it anyway, e.g. after the store
        reported a target as gone.
        """
        ordered: List[Branch] = sorted(branches, key=lambda b: b.ordinal)
        current = self._branches.get(message_id)
        if current is not None and not reconcile and _missing(
            (b.id for b in current.branches), (b.id for b in ordered)
        ):
            logger.debug("Ignoring stale branch list for %s", message_id)
            return current
        projection = BranchProjection(tuple(ordered), _active_index(ordered))
        self._branches[message_id] = projection
        return projection

    def apply_versions(
        self, message_id: str, versions: Iterable[Version], reconcile: bool = False
    ) -> VersionProjection:
        """Replace the version projection, ordered by creation time. Stale values are ignored as for branches."""
        ordered: List[Version] = sorted(versions, key=lambda v: v.created_at)
        current = self._versions.get(message_id)
        if current is not None and not reconcile and _missing(
            (v.version_id for v in current.versions), (v.version_id for v in ordered)
        ):
            logger.debug("Ignoring stale version list for %s", message_id)
            return current
        projection = VersionProjection(tuple(ordered), _active_index(ordered))
        self._versions[message_id] = projection
        return projection

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        """Apply one subscription value. Pushed values arrive in store order and may shrink a list."""
        if isinstance(snapshot, WSBranchesUpdate):
            self.apply_branches(snapshot.message_id, snapshot.branches, reconcile=True)
        else:
            self.apply_versions(snapshot.message_id, snapshot.versions, reconcile=True)

    async def refresh(self, message_id: str, reconcile: bool = False) -> None:
        """Re-fetch both projections of a message.

        Each list is applied as soon as it arrives, so a subscription value pushed
        while the other fetch is in flight is not overwritten by an older read.
        """
        branches = await self.store.get_message_branches(message_id)
        self.apply_branches(message_id, branches.branches, reconcile=reconcile)
        versions = await self.store.get_message_versions(message_id)
        self.apply_versions(message_id, versions.versions, reconcile=reconcile)

    def branches_for(self, message_id: str) -> BranchProjection:
        return self._branches.get(message_id, BranchProjection())

    def versions_for(self, message_id: str) -> VersionProjection:
        return self._versions.get(message_id, VersionProjection())

    def is_loading(self, message_id: str) -> bool:
        return message_id in self._pending

    @asynccontextmanager
    async def _navigation(self, message_id: str) -> AsyncIterator[None]:
        # One switch per message at a time; a second one is dropped, not queued
        if message_id in self._pending:
            raise NavigationError(NavigationErrorKind.BUSY, f"Navigation pending for {message_id}")
        self._pending.add(message_id)
        try:
            yield
        finally:
            self._pending.discard(message_id)

    async def switch_branch(self, message_id: str, target_index: int) -> Branch:
        """Ask the store to activate the branch at target_index of the latest projection."""
        async with self._navigation(message_id):
            projection = self.branches_for(message_id)
            if not 0 <= target_index < projection.length:
                raise NavigationError(
                    NavigationErrorKind.TARGET_NOT_FOUND,
                    f"No branch {target_index} for message {message_id}"
                )
            target = projection.branches[target_index]
            result = await self.store.switch_branch(message_id, target.id)
            if not result.success:
                raise NavigationError(NavigationErrorKind.TARGET_NOT_FOUND, f"Branch {target.id} was rejected")
        logger.debug("Message %s branch %s/%s requested", message_id, target_index + 1, projection.length)
        return target

    async def switch_version(self, message_id: str, target_version_id: str) -> Version:
        """Ask the store to activate a version of the latest projection."""
        async with self._navigation(message_id):
            projection = self.versions_for(message_id)
            index = projection.index_of(target_version_id)
            if index < 0:
                raise NavigationError(
                    NavigationErrorKind.TARGET_NOT_FOUND,
                    f"No version {target_version_id} for message {message_id}"
                )
            target = projection.versions[index]
            result = await self.store.switch_version(message_id, target_version_id)
            if not result.success:
                raise NavigationError(
                    NavigationErrorKind.TARGET_NOT_FOUND, f"Version {target_version_id} was rejected"
                )
        logger.debug("Message %s version %s/%s requested", message_id, index + 1, projection.length)
        return target
