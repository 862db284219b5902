"""
Test configuration and fixtures.
"""
import asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Iterator, List, Optional, Union

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from threadline.errors import NavigationError, NavigationErrorKind
from threadline.main import create_app
from threadline.models import (
    Branch,
    BranchList,
    EditResult,
    Message,
    ResumeResult,
    RetryResult,
    SuccessResult,
    Version,
    VersionList,
)
from threadline.settings import Settings

MEMORY_DB = "sqlite+aiosqlite://"


@pytest.fixture
def app() -> FastAPI:
    """Create a test FastAPI application backed by an in-memory database."""
    return create_app(Settings(database_url=MEMORY_DB))


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    """Synchronous client; one event loop for HTTP calls and WebSockets."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.db.dispose()


@pytest.fixture
def conversation(client: TestClient) -> Dict:
    """A chat with a user question and an assistant answer."""
    chat = client.post("/v1/chats", json={"id": "chat-1", "title": "Test Chat"}).json()
    question = client.post(f"/v1/chats/{chat['id']}/messages", json={
        "role": "user",
        "content": "What is Python?"
    }).json()
    answer = client.post(f"/v1/chats/{chat['id']}/messages", json={
        "role": "assistant",
        "content": "A programming language.",
        "model": "gpt-4"
    }).json()
    return {"chat": chat, "messages": [question, answer]}


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def make_branches(message_id: str, count: int, active: int = 0) -> List[Branch]:
    return [
        Branch(
            id=f"{message_id}-b{i}",
            fork_point_message_id=message_id,
            ordinal=i,
            is_active=i == active,
            name=f"Branch {i + 1}",
            content=f"content {i}",
            created_at=BASE_TIME + timedelta(seconds=i)
        )
        for i in range(count)
    ]


def make_versions(message_id: str, count: int, active: int = 0) -> List[Version]:
    return [
        Version(
            version_id=f"{message_id}-v{i + 1}",
            message_id=message_id,
            content=f"answer {i + 1}",
            model="gpt-4",
            created_at=BASE_TIME + timedelta(seconds=i),
            is_active=i == active
        )
        for i in range(count)
    ]


class Gate:
    """Scripted resume response that is released only once its event is set."""

    def __init__(self, response: Union[ResumeResult, Exception]) -> None:
        self.event = asyncio.Event()
        self.response = response


class FakeChatStore:
    """In-memory ChatStore: scripted resume responses, server-side branch/version lists."""

    def __init__(self) -> None:
        self.resume_script: Dict[str, List] = {}
        self.resume_calls: List = []
        self.complete_calls: List[str] = []
        self.complete_error: Optional[Exception] = None
        self.stop_calls: List[str] = []
        self.incomplete: Dict[str, List[Message]] = {}
        self.branches: Dict[str, List[Branch]] = {}
        self.versions: Dict[str, List[Version]] = {}
        self.fetches: List[str] = []
        self.versions_gate: Optional[asyncio.Event] = None
        self.switch_calls: List = []
        self.switch_gate: Optional[asyncio.Event] = None
        self.switch_success = True
        self.edits: List = []
        self.retries: List = []
        self.pushes: Dict[str, "asyncio.Queue"] = {}

    def script(self, message_id: str, *responses) -> None:
        self.resume_script.setdefault(message_id, []).extend(responses)

    async def resume_stream(self, message_id: str, from_position: int) -> ResumeResult:
        self.resume_calls.append((message_id, from_position))
        script = self.resume_script.get(message_id)
        if not script:
            return ResumeResult(delta="", new_position=from_position, is_complete=False)
        response = script.pop(0)
        if isinstance(response, Gate):
            await response.event.wait()
            response = response.response
        if isinstance(response, Exception):
            raise response
        return response

    async def mark_stream_complete(self, message_id: str) -> None:
        self.complete_calls.append(message_id)
        if self.complete_error is not None:
            raise self.complete_error

    async def stop_stream(self, message_id: str) -> None:
        self.stop_calls.append(message_id)

    async def get_incomplete_streams(self, chat_id: str) -> List[Message]:
        return list(self.incomplete.get(chat_id, []))

    async def get_message_branches(self, message_id: str) -> BranchList:
        self.fetches.append(message_id)
        branches = self.branches.get(message_id, [])
        active = next((i for i, b in enumerate(branches) if b.is_active), -1)
        return BranchList(branches=list(branches), active_index=active)

    async def get_message_versions(self, message_id: str) -> VersionList:
        if self.versions_gate is not None:
            await self.versions_gate.wait()
        versions = self.versions.get(message_id, [])
        active = next((i for i, v in enumerate(versions) if v.is_active), -1)
        return VersionList(versions=list(versions), active_index=active)

    async def switch_branch(self, message_id: str, branch: Union[int, str]) -> SuccessResult:
        self.switch_calls.append((message_id, branch))
        if self.switch_gate is not None:
            await self.switch_gate.wait()
        branches = self.branches.get(message_id, [])
        if not any(b.id == branch for b in branches):
            raise NavigationError(NavigationErrorKind.TARGET_NOT_FOUND, f"Branch {branch} no longer exists")
        if self.switch_success:
            self.branches[message_id] = [b.model_copy(update={"is_active": b.id == branch}) for b in branches]
        return SuccessResult(success=self.switch_success)

    async def switch_version(self, message_id: str, version_id: str) -> SuccessResult:
        self.switch_calls.append((message_id, version_id))
        if self.switch_gate is not None:
            await self.switch_gate.wait()
        versions = self.versions.get(message_id, [])
        if not any(v.version_id == version_id for v in versions):
            raise NavigationError(NavigationErrorKind.TARGET_NOT_FOUND, f"Version {version_id} no longer exists")
        if self.switch_success:
            self.versions[message_id] = [
                v.model_copy(update={"is_active": v.version_id == version_id}) for v in versions
            ]
        return SuccessResult(success=self.switch_success)

    async def edit_message(self, message_id: str, new_content: str) -> EditResult:
        self.edits.append((message_id, new_content))
        branches = [b.model_copy(update={"is_active": False}) for b in self.branches.get(message_id, [])]
        new_branch = Branch(
            id=f"{message_id}-b{len(branches)}",
            fork_point_message_id=message_id,
            ordinal=len(branches),
            is_active=True,
            content=new_content
        )
        self.branches[message_id] = branches + [new_branch]
        return EditResult(new_branch_id=new_branch.id)

    async def retry_message(self, message_id: str, model: Optional[str] = None) -> RetryResult:
        self.retries.append((message_id, model))
        versions = [v.model_copy(update={"is_active": False}) for v in self.versions.get(message_id, [])]
        new_version = Version(
            version_id=f"{message_id}-v{len(versions) + 1}",
            message_id=message_id,
            model=model or "gpt-4",
            created_at=BASE_TIME + timedelta(seconds=len(versions)),
            is_active=True
        )
        self.versions[message_id] = versions + [new_version]
        return RetryResult(new_version_id=new_version.version_id)

    async def watch(self, message_id: str):
        queue = self.pushes.setdefault(message_id, asyncio.Queue())
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


@pytest.fixture
def fake_store() -> FakeChatStore:
    return FakeChatStore()
