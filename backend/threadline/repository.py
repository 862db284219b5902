"""
Database repository layer for the reference store.
The store is the sole writer of branches and versions; both are append-only.
"""
import logging
import uuid
from collections import Counter
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import BranchDB, ChatDB, MessageDB, VersionDB
from .models import (
    Branch,
    BranchList,
    Chat,
    DeleteResult,
    EditResult,
    Message,
    MessageCreateRequest,
    ResumeResult,
    RetryResult,
    Version,
    VersionList,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "unknown"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _to_branch(db_branch: BranchDB) -> Branch:
    return Branch(
        id=db_branch.id,
        fork_point_message_id=db_branch.fork_point_message_id,
        ordinal=db_branch.ordinal,
        is_active=db_branch.is_active,
        name=db_branch.name,
        content=db_branch.content,
        created_at=db_branch.created_at
    )


def _to_version(db_version: VersionDB) -> Version:
    return Version(
        version_id=db_version.version_id,
        message_id=db_version.message_id,
        content=db_version.content,
        model=db_version.model,
        created_at=db_version.created_at,
        is_active=db_version.is_active
    )


class MessageRepository:
    """Repository for chats, messages and stream content."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_chat(self, title: str, chat_id: Optional[str] = None) -> Chat:
        db_chat = ChatDB(id=chat_id or _new_id("chat"), title=title)
        self.session.add(db_chat)
        await self.session.commit()
        return Chat(id=db_chat.id, title=db_chat.title, created_at=db_chat.created_at)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        db_chat = await self.session.get(ChatDB, chat_id)
        if not db_chat:
            return None
        return Chat(id=db_chat.id, title=db_chat.title, created_at=db_chat.created_at)

    async def _get_db_message(self, message_id: str) -> Optional[MessageDB]:
        result = await self.session.execute(
            select(MessageDB).where(MessageDB.id == message_id)
        )
        return result.scalar_one_or_none()

    async def _content_holder(self, db_message: MessageDB):
        """The row whose content is the message's resolved content."""
        if db_message.active_version_id:
            result = await self.session.execute(
                select(VersionDB).where(VersionDB.version_id == db_message.active_version_id)
            )
            version = result.scalar_one_or_none()
            if version:
                return version
        if db_message.active_branch_id:
            branch = await self.session.get(BranchDB, db_message.active_branch_id)
            if branch:
                return branch
        return db_message

    async def _to_message(self, db_message: MessageDB) -> Message:
        holder = await self._content_holder(db_message)
        return Message(
            id=db_message.id,
            chat_id=db_message.chat_id,
            role=db_message.role,
            content=holder.content,
            is_streaming=db_message.is_streaming,
            is_stopped=db_message.is_stopped,
            branch_id=db_message.branch_id,
            active_branch_id=db_message.active_branch_id,
            active_version_id=db_message.active_version_id,
            created_at=db_message.created_at
        )

    async def get_message(self, message_id: str) -> Optional[Message]:
        """Get a message with its content resolved through the active branch/version."""
        db_message = await self._get_db_message(message_id)
        if not db_message:
            return None
        return await self._to_message(db_message)

    async def _visible_messages(self, chat_id: str) -> List[MessageDB]:
        result = await self.session.execute(
            select(MessageDB)
            .where(MessageDB.chat_id == chat_id)
            .order_by(MessageDB.seq)
        )
        db_messages = result.scalars().all()

        branch_result = await self.session.execute(
            select(BranchDB).where(BranchDB.fork_point_message_id.in_([m.id for m in db_messages]))
        )
        branches = {b.id: b for b in branch_result.scalars().all()}

        # A branch-scoped message is visible when its branch is active and its fork point is visible
        visible = {}
        path = []
        for db_msg in db_messages:
            if db_msg.branch_id is None:
                is_visible = True
            else:
                branch = branches.get(db_msg.branch_id)
                is_visible = (
                    branch is not None
                    and branch.is_active
                    and visible.get(branch.fork_point_message_id, False)
                )
            visible[db_msg.id] = is_visible
            if is_visible:
                path.append(db_msg)
        return path

    async def get_active_path(self, chat_id: str) -> List[Message]:
        """Get the messages of a chat along the currently active branches."""
        return [await self._to_message(m) for m in await self._visible_messages(chat_id)]

    async def add_message(self, chat_id: str, request: MessageCreateRequest) -> Message:
        """Append a message to the tip of the active path."""
        path = await self._visible_messages(chat_id)
        scope = None
        if path:
            tip = path[-1]
            scope = tip.active_branch_id or tip.branch_id

        db_message = MessageDB(
            id=_new_id("msg"),
            chat_id=chat_id,
            role=request.role,
            content=request.content,
            is_streaming=request.is_streaming,
            branch_id=scope
        )

        if request.role == "user":
            # Root branch, so the original text stays reachable after an edit
            root = BranchDB(
                id=_new_id("branch"),
                fork_point_message_id=db_message.id,
                ordinal=0,
                name="Branch 1",
                content=request.content,
                is_active=True
            )
            self.session.add(root)
            db_message.active_branch_id = root.id
        elif request.role == "assistant":
            initial = VersionDB(
                version_id=_new_id("ver"),
                message_id=db_message.id,
                content=request.content,
                model=request.model or DEFAULT_MODEL,
                is_active=True
            )
            self.session.add(initial)
            db_message.active_version_id = initial.version_id

        self.session.add(db_message)
        await self.session.commit()
        return await self._to_message(db_message)

    async def append_chunk(self, message_id: str, delta: str) -> Optional[Message]:
        """Append generated content to a streaming message."""
        db_message = await self._get_db_message(message_id)
        if not db_message:
            return None
        holder = await self._content_holder(db_message)
        holder.content = (holder.content or "") + delta
        await self.session.commit()
        return await self._to_message(db_message)

    async def resume(self, message_id: str, from_position: int) -> Optional[ResumeResult]:
        """Content past from_position. At or past the current progress the delta is empty."""
        db_message = await self._get_db_message(message_id)
        if not db_message:
            return None
        content = (await self._content_holder(db_message)).content or ""
        if from_position >= len(content):
            return ResumeResult(delta="", new_position=from_position, is_complete=not db_message.is_streaming)
        return ResumeResult(
            delta=content[from_position:],
            new_position=len(content),
            is_complete=not db_message.is_streaming
        )

    async def mark_complete(self, message_id: str) -> bool:
        """Mark a message's stream complete. Repeated calls are no-ops."""
        db_message = await self._get_db_message(message_id)
        if not db_message:
            return False
        if db_message.is_streaming:
            db_message.is_streaming = False
            await self.session.commit()
            logger.info("Stream complete for message %s", message_id)
        return True

    async def stop(self, message_id: str) -> bool:
        """Stop a message's stream at the content produced so far."""
        db_message = await self._get_db_message(message_id)
        if not db_message:
            return False
        if db_message.is_streaming:
            db_message.is_streaming = False
            db_message.is_stopped = True
            await self.session.commit()
            logger.info("Stream stopped for message %s", message_id)
        return True

    async def incomplete_streams(self, chat_id: str) -> List[Message]:
        """Messages of a chat whose stream was neither completed nor stopped."""
        result = await self.session.execute(
            select(MessageDB)
            .where(MessageDB.chat_id == chat_id)
            .where(MessageDB.is_streaming.is_(True))
            .where(MessageDB.is_stopped.is_(False))
            .order_by(MessageDB.seq)
        )
        return [await self._to_message(m) for m in result.scalars().all()]


class BranchRepository:
    """Repository for branch operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _branches(self, message_id: str) -> List[BranchDB]:
        result = await self.session.execute(
            select(BranchDB)
            .where(BranchDB.fork_point_message_id == message_id)
            .order_by(BranchDB.ordinal)
        )
        return list(result.scalars().all())

    async def list(self, message_id: str) -> BranchList:
        """Branches of a fork point in ordinal order."""
        db_branches = await self._branches(message_id)
        active_index = next((i for i, b in enumerate(db_branches) if b.is_active), -1)
        return BranchList(branches=[_to_branch(b) for b in db_branches], active_index=active_index)

    async def switch(
        self,
        message_id: str,
        branch_id: Optional[str] = None,
        branch_index: Optional[int] = None
    ) -> bool:
        """Activate one branch of a fork point. Returns False if the target does not exist."""
        db_branches = await self._branches(message_id)
        target = None
        if branch_id is not None:
            target = next((b for b in db_branches if b.id == branch_id), None)
        elif branch_index is not None and 0 <= branch_index < len(db_branches):
            target = db_branches[branch_index]
        if target is None:
            return False

        for branch in db_branches:
            branch.is_active = branch.id == target.id
        result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
        db_message = result.scalar_one()
        db_message.active_branch_id = target.id
        await self.session.commit()
        logger.info("Message %s switched to %s", message_id, target.name)
        return True

    async def edit(self, message_id: str, content: str) -> Optional[EditResult]:
        """Create exactly one new active branch holding the edited content."""
        result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
        db_message = result.scalar_one_or_none()
        if not db_message:
            return None

        db_branches = await self._branches(message_id)
        for branch in db_branches:
            branch.is_active = False
        # Next ordinal follows the highest remaining one; deleted branches leave gaps
        ordinal = max((b.ordinal for b in db_branches), default=-1) + 1
        new_branch = BranchDB(
            id=_new_id("branch"),
            fork_point_message_id=message_id,
            ordinal=ordinal,
            name=f"Branch {ordinal + 1}",
            content=content,
            is_active=True
        )
        self.session.add(new_branch)
        db_message.active_branch_id = new_branch.id
        await self.session.commit()
        logger.info("Created %s for message %s", new_branch.name, message_id)
        return EditResult(new_branch_id=new_branch.id)

    async def _delete_branch_rows(self, db_branches: List[BranchDB], counts: Counter) -> None:
        branch_ids = [b.id for b in db_branches]
        if branch_ids:
            result = await self.session.execute(
                select(MessageDB).where(MessageDB.branch_id.in_(branch_ids))
            )
            for db_message in result.scalars().all():
                await self._delete_message_rows(db_message, counts)
        for db_branch in db_branches:
            await self.session.delete(db_branch)
            counts["branches"] += 1

    async def _delete_message_rows(self, db_message: MessageDB, counts: Counter) -> None:
        # Branches rooted here take the messages created under them along
        await self._delete_branch_rows(await self._branches(db_message.id), counts)
        versions = await self.session.execute(
            select(VersionDB).where(VersionDB.message_id == db_message.id)
        )
        for db_version in versions.scalars().all():
            await self.session.delete(db_version)
        await self.session.delete(db_message)
        counts["messages"] += 1

    async def delete_message(self, message_id: str) -> Optional[DeleteResult]:
        """Delete a message with its versions, its branches and everything created under them."""
        result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
        db_message = result.scalar_one_or_none()
        if not db_message:
            return None

        counts: Counter = Counter()
        await self._delete_message_rows(db_message, counts)
        await self.session.commit()
        logger.info("Deleted message %s with %s branches", message_id, counts["branches"])
        return DeleteResult(
            success=True,
            deleted_branches=counts["branches"],
            deleted_messages=counts["messages"]
        )

    async def delete_branch(self, message_id: str, branch_id: str) -> Optional[DeleteResult]:
        """Delete one branch of a fork point. The lowest remaining ordinal becomes active if needed.

        Callers must refuse to delete the last branch of a fork point.
        """
        db_branches = await self._branches(message_id)
        target = next((b for b in db_branches if b.id == branch_id), None)
        if target is None:
            return None

        was_active = target.is_active
        counts: Counter = Counter()
        await self._delete_branch_rows([target], counts)
        if was_active:
            fallback = next(b for b in db_branches if b.id != branch_id)
            fallback.is_active = True
            result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
            result.scalar_one().active_branch_id = fallback.id
        await self.session.commit()
        logger.info("Deleted %s of message %s", target.name, message_id)
        return DeleteResult(
            success=True,
            deleted_branches=counts["branches"],
            deleted_messages=counts["messages"]
        )


class VersionRepository:
    """Repository for version operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _versions(self, message_id: str) -> List[VersionDB]:
        result = await self.session.execute(
            select(VersionDB)
            .where(VersionDB.message_id == message_id)
            .order_by(VersionDB.created_at, VersionDB.seq)
        )
        return list(result.scalars().all())

    async def list(self, message_id: str) -> VersionList:
        """Versions of a message in creation order."""
        db_versions = await self._versions(message_id)
        active_index = next((i for i, v in enumerate(db_versions) if v.is_active), -1)
        return VersionList(versions=[_to_version(v) for v in db_versions], active_index=active_index)

    async def switch(self, message_id: str, version_id: str) -> bool:
        """Activate one version. Returns False if the version does not exist."""
        db_versions = await self._versions(message_id)
        if not any(v.version_id == version_id for v in db_versions):
            return False
        for version in db_versions:
            version.is_active = version.version_id == version_id
        result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
        db_message = result.scalar_one()
        db_message.active_version_id = version_id
        await self.session.commit()
        logger.info("Message %s switched to version %s", message_id, version_id)
        return True

    async def retry(self, message_id: str, model: Optional[str] = None) -> Optional[RetryResult]:
        """Create exactly one new active version and restart the message's stream."""
        result = await self.session.execute(select(MessageDB).where(MessageDB.id == message_id))
        db_message = result.scalar_one_or_none()
        if not db_message:
            return None

        db_versions = await self._versions(message_id)
        previous_model = next((v.model for v in db_versions if v.is_active), DEFAULT_MODEL)
        for version in db_versions:
            version.is_active = False
        new_version = VersionDB(
            version_id=_new_id("ver"),
            message_id=message_id,
            content="",
            model=model or previous_model,
            is_active=True
        )
        self.session.add(new_version)
        db_message.active_version_id = new_version.version_id
        db_message.is_streaming = True
        db_message.is_stopped = False
        await self.session.commit()
        logger.info("Created version %s of message %s with %s", new_version.version_id, message_id, new_version.model)
        return RetryResult(new_version_id=new_version.version_id)
