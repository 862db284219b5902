"""
ChatCore: owns the branch/version projection, the stream client and the per-message
navigators, and exposes the consumer-facing API.

Edit, retry and navigation are direct calls on this object; there is no event bus.
"""
import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .client import HttpChatStore
from .contracts import ChatStore
from .errors import ThreadlineError, TransportError
from .navigation import BranchNavigator, BranchVersionStore, DeepLink, DeepLinkResolver, NavigatorView
from .settings import Settings
from .streaming import ResumableStreamClient, StreamSession, StreamSnapshot

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 50


class ChatCore:
    """Consumer API over one external store."""

    def __init__(
        self,
        store: ChatStore,
        resume_interval: float = 10.0,
        on_content_update: Optional[Callable[[str, str, bool], None]] = None,
        notify: Optional[Callable[[str], None]] = None
    ) -> None:
        self.store = store
        self.projection = BranchVersionStore(store)
        self.streams = ResumableStreamClient(
            store,
            resume_interval=resume_interval,
            on_content_update=on_content_update,
            on_complete=self._on_stream_complete,
            on_error=self._on_stream_error
        )
        self._notify = notify
        # Most recent transient notices only
        self.notifications: Deque[str] = deque(maxlen=MAX_NOTIFICATIONS)
        # Persistent stream error banners, cleared by retry or completion
        self.banners: Dict[str, ThreadlineError] = {}
        self._navigators: Dict[str, BranchNavigator] = {}
        self._watchers: Dict[str, "asyncio.Task[None]"] = {}
        self.deep_links = DeepLinkResolver(self.navigator)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ChatCore":
        settings = settings or Settings.from_env()
        return cls(HttpChatStore(settings.api_url), resume_interval=settings.resume_interval)

    # Streams
    def activate(self, message_id: str) -> StreamSession:
        return self.streams.activate(message_id)

    def deactivate(self, message_id: str) -> None:
        self.streams.deactivate(message_id)
        self.banners.pop(message_id, None)

    def retry_stream(self, message_id: str) -> Optional[StreamSession]:
        self.banners.pop(message_id, None)
        return self.streams.retry(message_id)

    async def stop(self, message_id: str) -> Optional[StreamSession]:
        """Stop a stream where it is. The content so far is kept and the store marks it complete."""
        self.banners.pop(message_id, None)
        return await self.streams.stop(message_id)

    async def recover(self, chat_id: str) -> List[StreamSession]:
        """Resume every stream of a chat that was interrupted before completing."""
        messages = await self.store.get_incomplete_streams(chat_id)
        sessions = [self.streams.activate(message.id) for message in messages]
        if sessions:
            logger.info("Recovering %s interrupted stream(s) in %s", len(sessions), chat_id)
        return sessions

    def stream_state(self, message_id: str) -> StreamSnapshot:
        return self.streams.snapshot(message_id)

    # Branches and versions
    def navigator(self, message_id: str) -> BranchNavigator:
        if message_id not in self._navigators:
            self._navigators[message_id] = BranchNavigator(
                message_id,
                self.projection,
                streams=self.streams,
                notify=self._notification,
                refresh_after_switch=message_id not in self._watchers
            )
        return self._navigators[message_id]

    def branch_position(self, message_id: str) -> Tuple[int, int]:
        return self.navigator(message_id).branch_position()

    def version_position(self, message_id: str) -> Tuple[int, int]:
        return self.navigator(message_id).version_position()

    def render(self, message_id: str) -> NavigatorView:
        return self.navigator(message_id).render()

    async def load(self, message_id: str) -> None:
        await self.projection.refresh(message_id)

    async def next_branch(self, message_id: str) -> bool:
        return await self.navigator(message_id).next_branch()

    async def prev_branch(self, message_id: str) -> bool:
        return await self.navigator(message_id).prev_branch()

    async def next_version(self, message_id: str) -> bool:
        return await self.navigator(message_id).next_version()

    async def prev_version(self, message_id: str) -> bool:
        return await self.navigator(message_id).prev_version()

    async def switch_to_branch(self, message_id: str, branch_id: str) -> bool:
        return await self.navigator(message_id).switch_to_branch(branch_id)

    async def switch_to_version(self, message_id: str, version_id: str) -> bool:
        return await self.navigator(message_id).switch_to_version(version_id)

    async def edit(self, message_id: str, new_content: str) -> str:
        return await self.navigator(message_id).edit(new_content)

    async def retry(self, message_id: str, model: Optional[str] = None) -> str:
        self.banners.pop(message_id, None)
        return await self.navigator(message_id).retry(model)

    async def resolve(self, locator: str) -> Optional[DeepLink]:
        return await self.deep_links.resolve(locator)

    # Subscriptions
    def follow(self, message_id: str) -> "asyncio.Task[None]":
        """Apply the store's pushed snapshots for a message until unfollowed."""
        if message_id not in self._watchers:
            self._watchers[message_id] = asyncio.get_running_loop().create_task(self._watch(message_id))
            self.navigator(message_id).refresh_after_switch = False
        return self._watchers[message_id]

    async def unfollow(self, message_id: str) -> None:
        task = self._watchers.pop(message_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if message_id in self._navigators:
            self._navigators[message_id].refresh_after_switch = True

    async def close(self) -> None:
        for message_id in list(self._watchers):
            await self.unfollow(message_id)
        self.streams.close()

    async def _watch(self, message_id: str) -> None:
        try:
            async for snapshot in self.store.watch(message_id):
                self.projection.apply_snapshot(snapshot)
        except TransportError as exc:
            logger.warning("Subscription to %s ended: %s", message_id, exc)
        finally:
            if self._watchers.get(message_id) is asyncio.current_task():
                del self._watchers[message_id]
                self.navigator(message_id).refresh_after_switch = True

    def _notification(self, text: str) -> None:
        self.notifications.append(text)
        if self._notify:
            self._notify(text)

    def _on_stream_complete(self, message_id: str, content: str) -> None:
        self.banners.pop(message_id, None)

    def _on_stream_error(self, message_id: str, error: ThreadlineError) -> None:
        self.banners[message_id] = error
