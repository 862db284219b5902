"""
Pydantic models for messages, branches, versions and the store contracts.
Wire names are camelCase; Python attributes are snake_case.
"""
from datetime import datetime
from typing import List, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Role = Literal["user", "assistant", "system"]


class WireModel(BaseModel):
    """Base for models exchanged with the external store."""
    model_config = ConfigDict(populate_by_name=True)


class Chat(WireModel):
    """A conversation holding messages."""
    id: str = Field(default_factory=lambda: f"chat-{uuid.uuid4().hex[:8]}")
    title: str
    created_at: datetime = Field(default_factory=datetime.now, alias="createdAt")

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v


class Message(WireModel):
    """A node in a conversation. Content is resolved through the active branch/version."""
    id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4().hex[:8]}")
    chat_id: str = Field(..., alias="chatId")
    role: Role
    content: str = ""
    is_streaming: bool = Field(False, alias="isStreaming")
    is_stopped: bool = Field(False, alias="isStopped")  # streaming ended by the user
    branch_id: Optional[str] = Field(None, alias="branchId")  # branch this message was created under
    active_branch_id: Optional[str] = Field(None, alias="activeBranchId")
    active_version_id: Optional[str] = Field(None, alias="activeVersionId")
    created_at: datetime = Field(default_factory=datetime.now, alias="createdAt")


class Branch(WireModel):
    """An alternative continuation rooted at a fork point. Ordinal is immutable."""
    id: str = Field(default_factory=lambda: f"branch-{uuid.uuid4().hex[:8]}")
    fork_point_message_id: str = Field(..., alias="forkPointMessageId")
    ordinal: int = Field(..., ge=0)
    is_active: bool = Field(False, alias="isActive")
    name: str = ""
    content: str = ""
    created_at: datetime = Field(default_factory=datetime.now, alias="createdAt")


class Version(WireModel):
    """An alternative content payload for one message, produced by a retry."""
    version_id: str = Field(default_factory=lambda: f"ver-{uuid.uuid4().hex[:8]}", alias="versionId")
    message_id: str = Field(..., alias="messageId")
    content: str = ""
    model: str
    created_at: datetime = Field(default_factory=datetime.now, alias="createdAt")
    is_active: bool = Field(False, alias="isActive")


class BranchList(WireModel):
    """Value of the getMessageBranches subscription."""
    branches: List[Branch] = Field(default_factory=list)
    active_index: int = Field(-1, alias="activeIndex")


class VersionList(WireModel):
    """Value of the getMessageVersions subscription."""
    versions: List[Version] = Field(default_factory=list)
    active_index: int = Field(-1, alias="activeIndex")


class ResumeResult(WireModel):
    """Response of resumeStream: the content past fromPosition."""
    delta: str = ""
    new_position: int = Field(..., ge=0, alias="newPosition")
    is_complete: bool = Field(False, alias="isComplete")


class SuccessResult(WireModel):
    """Result of a mutation that reports only success."""
    success: bool


class DeleteResult(WireModel):
    """Result of deleting a message or a branch, with everything removed under it."""
    success: bool
    deleted_branches: int = Field(0, alias="deletedBranches")
    deleted_messages: int = Field(0, alias="deletedMessages")


class EditResult(WireModel):
    new_branch_id: str = Field(..., alias="newBranchId")


class RetryResult(WireModel):
    new_version_id: str = Field(..., alias="newVersionId")


# Request bodies
class ChatCreateRequest(WireModel):
    """Request to create a chat."""
    id: Optional[str] = None
    title: str

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v


class MessageCreateRequest(WireModel):
    """Request to append a message to the active path of a chat."""
    role: Role
    content: str = ""
    model: Optional[str] = None
    is_streaming: bool = Field(False, alias="isStreaming")

    @model_validator(mode="after")
    def content_required_unless_streaming(self) -> "MessageCreateRequest":
        if not self.is_streaming and not self.content.strip():
            raise ValueError("Content cannot be empty")
        return self


class StreamChunkRequest(WireModel):
    """Producer write: append generated content to a streaming message."""
    delta: str


class ResumeRequest(WireModel):
    from_position: int = Field(0, ge=0, alias="fromPosition")


class BranchSwitchRequest(WireModel):
    """Switch by branch id or by zero-based index in ordinal order."""
    branch_id: Optional[str] = Field(None, alias="branchId")
    branch_index: Optional[int] = Field(None, ge=0, alias="branchIndex")

    @model_validator(mode="after")
    def exactly_one_target(self) -> "BranchSwitchRequest":
        if (self.branch_id is None) == (self.branch_index is None):
            raise ValueError("Provide exactly one of branchId or branchIndex")
        return self


class VersionSwitchRequest(WireModel):
    version_id: str = Field(..., alias="versionId")


class EditRequest(WireModel):
    """Request to edit a message. Always creates a new branch."""
    content: str

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v


class RetryRequest(WireModel):
    """Request to retry an assistant message. Always creates a new version."""
    model: Optional[str] = None


class MessagePage(WireModel):
    """Messages of a chat along the active path."""
    data: List[Message] = Field(default_factory=list)
