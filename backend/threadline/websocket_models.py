"""
WebSocket message type definitions for message subscriptions.
"""
from typing import List, Literal

from pydantic import Field

from .models import Branch, Version, WireModel


class WSConnectionMessage(WireModel):
    """Subscription established message."""
    type: Literal["connection"] = "connection"
    status: Literal["connected"] = "connected"
    message_id: str = Field(..., alias="messageId")


class WSBranchesUpdate(WireModel):
    """Current branch snapshot of a message."""
    type: Literal["branches"] = "branches"
    message_id: str = Field(..., alias="messageId")
    branches: List[Branch]
    active_index: int = Field(..., alias="activeIndex")


class WSVersionsUpdate(WireModel):
    """Current version snapshot of a message."""
    type: Literal["versions"] = "versions"
    message_id: str = Field(..., alias="messageId")
    versions: List[Version]
    active_index: int = Field(..., alias="activeIndex")


class WSErrorMessage(WireModel):
    """Error message for WebSocket."""
    type: Literal["error"] = "error"
    message: str
