"""
Database models and connection setup for the reference store.
"""
import logging
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import StaticPool

from .settings import DATABASE_URL

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


class ChatDB(Base):
    """Database model for chats."""
    __tablename__ = "chats"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    messages = relationship("MessageDB", back_populates="chat", cascade="all, delete-orphan")


class MessageDB(Base):
    """Database model for messages."""
    __tablename__ = "messages"

    # Insertion order of the chat; timestamps can tie
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False)
    chat_id = Column(String, ForeignKey("chats.id"), nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    is_streaming = Column(Boolean, nullable=False, default=False)
    is_stopped = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)

    # Branch scope this message was created under (None on the trunk)
    branch_id = Column(String, ForeignKey("branches.id"), nullable=True)
    active_branch_id = Column(String, nullable=True)
    active_version_id = Column(String, nullable=True)

    # Relationships
    chat = relationship("ChatDB", back_populates="messages")


class BranchDB(Base):
    """Database model for branches rooted at a fork point message."""
    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("fork_point_message_id", "ordinal"),)

    id = Column(String, primary_key=True)
    fork_point_message_id = Column(String, nullable=False, index=True)
    ordinal = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)


class VersionDB(Base):
    """Database model for message versions."""
    __tablename__ = "versions"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(String, unique=True, nullable=False)
    message_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    model = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)


class Database:
    """Async engine and session factory, with lazy schema creation."""

    def __init__(self, url: Optional[str] = None, echo: bool = False) -> None:
        self.url = url or DATABASE_URL
        kwargs = {}
        if self.url.startswith("sqlite") and (":memory:" in self.url or self.url.endswith("://")):
            # One shared connection, otherwise every connection gets its own empty database
            kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        self.engine = create_async_engine(self.url, echo=echo, **kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self._initialized = False

    async def init(self) -> None:
        """Initialize database tables."""
        if self._initialized:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True
        logger.info("Database schema ready at %s", self.url)

    async def session(self) -> AsyncIterator[AsyncSession]:
        """Dependency to get a database session."""
        await self.init()
        async with self.session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()
