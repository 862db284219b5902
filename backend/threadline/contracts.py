"""
Query/mutation contracts the core consumes from the external store.
The store is the sole writer; the core only reflects what it reports.
"""
from typing import AsyncIterator, List, Optional, Protocol, Union, runtime_checkable

from .models import BranchList, EditResult, Message, ResumeResult, RetryResult, SuccessResult, VersionList
from .websocket_models import WSBranchesUpdate, WSVersionsUpdate


Snapshot = Union[WSBranchesUpdate, WSVersionsUpdate]


@runtime_checkable
class ChatStore(Protocol):
    """External store operations. Implementations raise TransportError on network failure."""

    async def resume_stream(self, message_id: str, from_position: int) -> ResumeResult:
        """Content past from_position. Response-idempotent at or past the server position."""
        ...

    async def mark_stream_complete(self, message_id: str) -> None:
        """Idempotent."""
        ...

    async def stop_stream(self, message_id: str) -> None:
        """User stop: the stream is marked stopped and complete. Idempotent."""
        ...

    async def get_incomplete_streams(self, chat_id: str) -> List[Message]:
        """Messages of a chat still streaming and not stopped."""
        ...

    async def get_message_branches(self, message_id: str) -> BranchList:
        ...

    async def get_message_versions(self, message_id: str) -> VersionList:
        ...

    async def switch_branch(self, message_id: str, branch: Union[int, str]) -> SuccessResult:
        """Switch by zero-based index or by branch id."""
        ...

    async def switch_version(self, message_id: str, version_id: str) -> SuccessResult:
        ...

    async def edit_message(self, message_id: str, new_content: str) -> EditResult:
        """Always creates a new branch."""
        ...

    async def retry_message(self, message_id: str, model: Optional[str] = None) -> RetryResult:
        """Always creates a new version."""
        ...

    def watch(self, message_id: str) -> AsyncIterator[Snapshot]:
        """Subscription: branch and version snapshots of one message as they change."""
        ...
