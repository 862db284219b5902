"""
Main FastAPI application: reference implementation of the external store contracts.
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Database
from .managers import ConnectionManager
from .models import (
    BranchList,
    BranchSwitchRequest,
    Chat,
    ChatCreateRequest,
    DeleteResult,
    EditRequest,
    EditResult,
    Message,
    MessageCreateRequest,
    MessagePage,
    ResumeRequest,
    ResumeResult,
    RetryRequest,
    RetryResult,
    StreamChunkRequest,
    SuccessResult,
    VersionList,
    VersionSwitchRequest,
)
from .repository import BranchRepository, MessageRepository, VersionRepository
from .settings import Settings, configure_logging
from .websocket_models import WSBranchesUpdate, WSConnectionMessage, WSErrorMessage, WSVersionsUpdate

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings.from_env()
    db = Database(settings.database_url, echo=settings.sql_echo)
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await db.init()
        yield
        await db.dispose()

    app = FastAPI(
        title="Threadline Store API",
        version="0.1.0",
        description="Branch/version and resumable stream store",
        lifespan=lifespan
    )

    # Add CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "*"],  # Allow all for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Export for testing
    app.manager = manager  # type: ignore
    app.db = db  # type: ignore

    async def snapshots(session: AsyncSession, message_id: str) -> List[str]:
        branches = await BranchRepository(session).list(message_id)
        versions = await VersionRepository(session).list(message_id)
        return [
            WSBranchesUpdate(
                message_id=message_id,
                branches=branches.branches,
                active_index=branches.active_index
            ).model_dump_json(by_alias=True),
            WSVersionsUpdate(
                message_id=message_id,
                versions=versions.versions,
                active_index=versions.active_index
            ).model_dump_json(by_alias=True),
        ]

    async def publish(session: AsyncSession, message_id: str, background_tasks: BackgroundTasks) -> None:
        """Push fresh snapshots to subscribers of a message in background."""
        if not manager.get_subscriber_count(message_id):
            return
        for payload in await snapshots(session, message_id):
            background_tasks.add_task(manager.send_to_all, payload, message_id)

    async def require_message(session: AsyncSession, message_id: str) -> Message:
        message = await MessageRepository(session).get_message(message_id)
        if message is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return message

    @app.post("/v1/chats", status_code=201)
    async def create_chat(request: ChatCreateRequest, session: AsyncSession = Depends(db.session)) -> Chat:
        """Create a new chat."""
        repo = MessageRepository(session)
        if request.id and await repo.get_chat(request.id):
            raise HTTPException(status_code=409, detail="Chat already exists")
        return await repo.create_chat(request.title, chat_id=request.id)

    @app.get("/v1/chats/{chat_id}/messages")
    async def get_messages(chat_id: str, session: AsyncSession = Depends(db.session)) -> MessagePage:
        """Get the messages of a chat along the active branches."""
        repo = MessageRepository(session)
        if not await repo.get_chat(chat_id):
            raise HTTPException(status_code=404, detail="Chat not found")
        return MessagePage(data=await repo.get_active_path(chat_id))

    @app.post("/v1/chats/{chat_id}/messages", status_code=201)
    async def add_message(
        chat_id: str,
        request: MessageCreateRequest,
        session: AsyncSession = Depends(db.session)
    ) -> Message:
        """Append a message to the active path of a chat."""
        repo = MessageRepository(session)
        if not await repo.get_chat(chat_id):
            raise HTTPException(status_code=404, detail="Chat not found")
        return await repo.add_message(chat_id, request)

    @app.get("/v1/messages/{message_id}")
    async def get_message(message_id: str, session: AsyncSession = Depends(db.session)) -> Message:
        """Get a message with its content resolved through the active branch/version."""
        return await require_message(session, message_id)

    @app.post("/v1/messages/{message_id}/stream")
    async def append_stream_chunk(
        message_id: str,
        request: StreamChunkRequest,
        session: AsyncSession = Depends(db.session)
    ) -> Message:
        """Append generated content to a streaming message."""
        message = await require_message(session, message_id)
        if not message.is_streaming:
            raise HTTPException(status_code=409, detail="Message is not streaming")
        return await MessageRepository(session).append_chunk(message_id, request.delta)

    @app.post("/v1/messages/{message_id}/resume")
    async def resume_stream(
        message_id: str,
        request: ResumeRequest,
        session: AsyncSession = Depends(db.session)
    ) -> ResumeResult:
        """Return the content past fromPosition."""
        result = await MessageRepository(session).resume(message_id, request.from_position)
        if result is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return result

    @app.post("/v1/messages/{message_id}/complete")
    async def mark_stream_complete(message_id: str, session: AsyncSession = Depends(db.session)) -> SuccessResult:
        """Mark a message's stream complete."""
        if not await MessageRepository(session).mark_complete(message_id):
            raise HTTPException(status_code=404, detail="Message not found")
        return SuccessResult(success=True)

    @app.post("/v1/messages/{message_id}/stop")
    async def stop_stream(message_id: str, session: AsyncSession = Depends(db.session)) -> SuccessResult:
        """Stop a message's stream where it is; it counts as complete."""
        if not await MessageRepository(session).stop(message_id):
            raise HTTPException(status_code=404, detail="Message not found")
        return SuccessResult(success=True)

    @app.get("/v1/chats/{chat_id}/streams/incomplete")
    async def get_incomplete_streams(chat_id: str, session: AsyncSession = Depends(db.session)) -> MessagePage:
        """Messages whose stream was interrupted before completion or stop."""
        repo = MessageRepository(session)
        if not await repo.get_chat(chat_id):
            raise HTTPException(status_code=404, detail="Chat not found")
        return MessagePage(data=await repo.incomplete_streams(chat_id))

    @app.delete("/v1/messages/{message_id}")
    async def delete_message(message_id: str, session: AsyncSession = Depends(db.session)) -> DeleteResult:
        """Delete a message together with its versions and branches."""
        result = await BranchRepository(session).delete_message(message_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return result

    @app.delete("/v1/messages/{message_id}/branches/{branch_id}")
    async def delete_branch(
        message_id: str,
        branch_id: str,
        background_tasks: BackgroundTasks,
        session: AsyncSession = Depends(db.session)
    ) -> DeleteResult:
        """Delete one branch of a message and the messages created under it."""
        await require_message(session, message_id)
        repo = BranchRepository(session)
        branches = await repo.list(message_id)
        if len(branches.branches) == 1 and branches.branches[0].id == branch_id:
            raise HTTPException(status_code=400, detail="Cannot delete the only branch")
        result = await repo.delete_branch(message_id, branch_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Branch not found")
        await publish(session, message_id, background_tasks)
        return result

    @app.get("/v1/messages/{message_id}/branches")
    async def get_message_branches(message_id: str, session: AsyncSession = Depends(db.session)) -> BranchList:
        """Get all branches rooted at a message."""
        await require_message(session, message_id)
        return await BranchRepository(session).list(message_id)

    @app.get("/v1/messages/{message_id}/versions")
    async def get_message_versions(message_id: str, session: AsyncSession = Depends(db.session)) -> VersionList:
        """Get all versions of a message."""
        await require_message(session, message_id)
        return await VersionRepository(session).list(message_id)

    @app.put("/v1/messages/{message_id}/branch")
    async def switch_branch(
        message_id: str,
        request: BranchSwitchRequest,
        background_tasks: BackgroundTasks,
        session: AsyncSession = Depends(db.session)
    ) -> SuccessResult:
        """Switch the active branch of a message by id or index."""
        await require_message(session, message_id)
        switched = await BranchRepository(session).switch(
            message_id,
            branch_id=request.branch_id,
            branch_index=request.branch_index
        )
        if not switched:
            raise HTTPException(status_code=404, detail="Branch not found")
        await publish(session, message_id, background_tasks)
        return SuccessResult(success=True)

    @app.put("/v1/messages/{message_id}/version")
    async def switch_version(
        message_id: str,
        request: VersionSwitchRequest,
        background_tasks: BackgroundTasks,
        session: AsyncSession = Depends(db.session)
    ) -> SuccessResult:
        """Switch the active version of a message."""
        await require_message(session, message_id)
        if not await VersionRepository(session).switch(message_id, request.version_id):
            raise HTTPException(status_code=404, detail="Version not found")
        await publish(session, message_id, background_tasks)
        return SuccessResult(success=True)

    @app.post("/v1/messages/{message_id}/edit", status_code=201)
    async def edit_message(
        message_id: str,
        request: EditRequest,
        background_tasks: BackgroundTasks,
        session: AsyncSession = Depends(db.session)
    ) -> EditResult:
        """Edit a user message. Creates a new branch, never mutates in place."""
        message = await require_message(session, message_id)
        if message.role != "user":
            raise HTTPException(status_code=400, detail="Only user messages can be edited")
        result = await BranchRepository(session).edit(message_id, request.content)
        await publish(session, message_id, background_tasks)
        return result

    @app.post("/v1/messages/{message_id}/retry", status_code=201)
    async def retry_message(
        message_id: str,
        request: RetryRequest,
        background_tasks: BackgroundTasks,
        session: AsyncSession = Depends(db.session)
    ) -> RetryResult:
        """Retry an assistant message. Creates a new version."""
        message = await require_message(session, message_id)
        if message.role != "assistant":
            raise HTTPException(status_code=400, detail="Invalid message for retry")
        result = await VersionRepository(session).retry(message_id, request.model)
        await publish(session, message_id, background_tasks)
        return result

    @app.websocket("/v1/messages/{message_id}/ws")
    async def message_subscription(websocket: WebSocket, message_id: str) -> None:
        """WebSocket subscription to a message's branch and version snapshots."""
        await db.init()
        async with db.session_factory() as session:
            exists = await MessageRepository(session).get_message(message_id) is not None
            payloads = await snapshots(session, message_id) if exists else []
        if not exists:
            await websocket.close(code=1008, reason="Message not found")
            return

        await manager.connect(websocket, message_id)

        # Send connection confirmation and current state
        await websocket.send_text(WSConnectionMessage(message_id=message_id).model_dump_json(by_alias=True))
        for payload in payloads:
            await websocket.send_text(payload)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message_dict = json.loads(data)
                except json.JSONDecodeError:
                    message_dict = {}

                if message_dict.get("type") == "refresh":
                    async with db.session_factory() as session:
                        for payload in await snapshots(session, message_id):
                            await websocket.send_text(payload)
                else:
                    # Unknown message type
                    error_msg = WSErrorMessage(message=f"Invalid message type: {message_dict.get('type')}")
                    await websocket.send_text(error_msg.model_dump_json())
        except WebSocketDisconnect:
            manager.disconnect(websocket, message_id)

    return app


def run() -> None:
    """Run the store with uvicorn."""
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("threadline.main:create_app", factory=True, host="0.0.0.0", port=8000)


# For running directly with uvicorn
if __name__ == "__main__":
    run()
