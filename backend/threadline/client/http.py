"""
ChatStore over HTTP (httpx) with WebSocket subscriptions (websockets).
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Type, TypeVar, Union

import httpx
import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import WebSocketException

from ..contracts import Snapshot
from ..errors import NavigationError, NavigationErrorKind, TransportError
from ..models import (
    BranchList,
    DeleteResult,
    EditResult,
    Message,
    MessagePage,
    ResumeResult,
    RetryResult,
    SuccessResult,
    VersionList,
)
from ..websocket_models import WSBranchesUpdate, WSVersionsUpdate

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class HttpChatStore:
    """Client for the store API. Implements the ChatStore protocol."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        # No timeout on resume calls by default; a stuck call only delays the next poll
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpChatStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self.client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            logger.warning("%s %s returned %s", method, path, response.status_code)
        return response

    @staticmethod
    def _raise_transport(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise TransportError(
                f"{response.request.method} {response.request.url.path} returned {response.status_code}",
                status_code=response.status_code
            )

    @staticmethod
    def _raise_navigation(response: httpx.Response, target: str) -> None:
        if response.status_code == 404:
            raise NavigationError(NavigationErrorKind.TARGET_NOT_FOUND, f"{target} no longer exists")
        HttpChatStore._raise_transport(response)

    @staticmethod
    def _parse(response: httpx.Response, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TransportError(
                f"{response.request.method} {response.request.url.path} returned an invalid body: {exc}",
                status_code=response.status_code
            ) from exc

    async def resume_stream(self, message_id: str, from_position: int) -> ResumeResult:
        response = await self._request(
            "POST", f"/v1/messages/{message_id}/resume", {"fromPosition": from_position}
        )
        self._raise_transport(response)
        return self._parse(response, ResumeResult)

    async def mark_stream_complete(self, message_id: str) -> None:
        response = await self._request("POST", f"/v1/messages/{message_id}/complete")
        self._raise_transport(response)

    async def stop_stream(self, message_id: str) -> None:
        response = await self._request("POST", f"/v1/messages/{message_id}/stop")
        self._raise_transport(response)

    async def get_incomplete_streams(self, chat_id: str) -> List[Message]:
        response = await self._request("GET", f"/v1/chats/{chat_id}/streams/incomplete")
        self._raise_transport(response)
        return self._parse(response, MessagePage).data

    async def delete_message(self, message_id: str) -> DeleteResult:
        response = await self._request("DELETE", f"/v1/messages/{message_id}")
        self._raise_transport(response)
        return self._parse(response, DeleteResult)

    async def delete_branch(self, message_id: str, branch_id: str) -> DeleteResult:
        response = await self._request("DELETE", f"/v1/messages/{message_id}/branches/{branch_id}")
        self._raise_navigation(response, f"Branch {branch_id}")
        return self._parse(response, DeleteResult)

    async def get_message_branches(self, message_id: str) -> BranchList:
        response = await self._request("GET", f"/v1/messages/{message_id}/branches")
        self._raise_transport(response)
        return self._parse(response, BranchList)

    async def get_message_versions(self, message_id: str) -> VersionList:
        response = await self._request("GET", f"/v1/messages/{message_id}/versions")
        self._raise_transport(response)
        return self._parse(response, VersionList)

    async def switch_branch(self, message_id: str, branch: Union[int, str]) -> SuccessResult:
        payload = {"branchIndex": branch} if isinstance(branch, int) else {"branchId": branch}
        response = await self._request("PUT", f"/v1/messages/{message_id}/branch", payload)
        self._raise_navigation(response, f"Branch {branch}")
        return self._parse(response, SuccessResult)

    async def switch_version(self, message_id: str, version_id: str) -> SuccessResult:
        response = await self._request(
            "PUT", f"/v1/messages/{message_id}/version", {"versionId": version_id}
        )
        self._raise_navigation(response, f"Version {version_id}")
        return self._parse(response, SuccessResult)

    async def edit_message(self, message_id: str, new_content: str) -> EditResult:
        response = await self._request("POST", f"/v1/messages/{message_id}/edit", {"content": new_content})
        self._raise_transport(response)
        return self._parse(response, EditResult)

    async def retry_message(self, message_id: str, model: Optional[str] = None) -> RetryResult:
        response = await self._request("POST", f"/v1/messages/{message_id}/retry", {"model": model})
        self._raise_transport(response)
        return self._parse(response, RetryResult)

    def subscription_url(self, message_id: str) -> str:
        if self.base_url.startswith("https://"):
            root = "wss://" + self.base_url[len("https://"):]
        else:
            root = "ws://" + self.base_url.split("://", 1)[-1]
        return f"{root}/v1/messages/{message_id}/ws"

    async def watch(self, message_id: str) -> AsyncIterator[Snapshot]:
        """Yield branch/version snapshots pushed by the store for one message."""
        url = self.subscription_url(message_id)
        try:
            async with websockets.connect(url) as websocket:
                async for raw in websocket:
                    snapshot = parse_snapshot(raw)
                    if snapshot is not None:
                        yield snapshot
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Subscription to {message_id} failed: {exc}") from exc


def parse_snapshot(raw: Union[str, bytes]) -> Optional[Snapshot]:
    """Decode one subscription frame; connection and unknown frames yield None."""
    data = json.loads(raw)
    if data.get("type") == "branches":
        return WSBranchesUpdate.model_validate(data)
    if data.get("type") == "versions":
        return WSVersionsUpdate.model_validate(data)
    if data.get("type") == "error":
        logger.warning("Subscription error: %s", data.get("message"))
    return None
