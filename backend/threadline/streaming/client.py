"""
Resumable stream client.

Reconstructs a message's final content across any number of interruptions by
polling the store's resume operation and merging each delta through a
PositionTracker. One StreamSession exists per message while it streams.

State machine::

    idle -> streaming -> (resuming <-> streaming) -> complete
                 \\            /
                  -> error <-          (left only through retry())

Every session carries a generation id. A response that arrives after its
session was deactivated or replaced is discarded, so a slow call can never
clobber the buffer of a newer session for the same message.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Set

from ..contracts import ChatStore
from ..errors import StreamError, ThreadlineError, TransportError
from .position import PositionTracker

logger = logging.getLogger(__name__)

ContentCallback = Callable[[str, str, bool], None]  # message_id, content, is_streaming
CompleteCallback = Callable[[str, str], None]  # message_id, final content
ErrorCallback = Callable[[str, ThreadlineError], None]


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    RESUMING = "resuming"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class StreamSnapshot:
    """What a view renders for one message."""
    content: str
    is_streaming: bool
    error: Optional[ThreadlineError] = None


class StreamSession:
    """Client-local state of one streaming message. Never persisted."""

    def __init__(self, message_id: str, generation: int) -> None:
        self.message_id = message_id
        self.generation = generation
        self.tracker = PositionTracker(message_id)
        self.state = StreamState.IDLE
        self.error: Optional[ThreadlineError] = None
        self.active = True
        self.completion_marked = False
        self.timer: Optional[asyncio.TimerHandle] = None
        self.settled = asyncio.Event()  # set on complete, error or deactivation

    @property
    def content(self) -> str:
        return self.tracker.buffer

    @property
    def position(self) -> int:
        return self.tracker.position

    @property
    def is_streaming(self) -> bool:
        return self.state in (StreamState.STREAMING, StreamState.RESUMING)

    def __repr__(self) -> str:
        return f"StreamSession({self.message_id!r}, gen={self.generation}, state={self.state.value})"


class ResumableStreamClient:
    """Drives the poll/merge loop for every active stream session."""

    def __init__(
        self,
        store: ChatStore,
        resume_interval: float = 10.0,
        on_content_update: Optional[ContentCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None
    ) -> None:
        self.store = store
        self.resume_interval = resume_interval
        self.on_content_update = on_content_update
        self.on_complete = on_complete
        self.on_error = on_error
        # Live sessions only: streaming, resuming or error
        self.sessions: Dict[str, StreamSession] = {}
        self._completed: Dict[str, StreamSession] = {}
        self._generations = itertools.count(1)
        self._tasks: Set["asyncio.Task[None]"] = set()

    def activate(self, message_id: str) -> StreamSession:
        """Start streaming a message from position 0.

        Returns the live session if one exists, or the finished session if the
        message already completed (deactivate first to stream it again).
        """
        existing = self.sessions.get(message_id) or self._completed.get(message_id)
        if existing is not None:
            return existing

        session = StreamSession(message_id, next(self._generations))
        session.state = StreamState.STREAMING
        # Raises without a running loop; register only once the first call is scheduled
        self._start(session)
        self.sessions[message_id] = session
        logger.debug("Activated %r", session)
        return session

    def deactivate(self, message_id: str) -> None:
        """Discard a message's session. Late responses for it are dropped."""
        self._completed.pop(message_id, None)
        session = self.sessions.pop(message_id, None)
        if session is None:
            return
        self._stop(session)
        logger.debug("Deactivated %r", session)

    def retry(self, message_id: str) -> Optional[StreamSession]:
        """Manual retry after an error. A no-op in any other state."""
        session = self.sessions.get(message_id)
        if session is None or session.state is not StreamState.ERROR:
            return session

        if isinstance(session.error, StreamError):
            # Client and server disagree on the position; only a restart is safe
            logger.info("Restarting %s from position 0 after %s", message_id, session.error.kind.value)
            session.tracker.reset()
        session.error = None
        session.state = StreamState.RESUMING
        session.settled.clear()
        self._start(session)
        return session

    async def stop(self, message_id: str) -> Optional[StreamSession]:
        """User stop: keep what has arrived, end the session and tell the store.

        Late responses for the stopped session are discarded like any stale generation.
        """
        session = self.sessions.get(message_id)
        if session is None:
            return None
        await self._complete(session, stopped=True)
        return session

    def snapshot(self, message_id: str) -> StreamSnapshot:
        """Current (content, is_streaming, error) for a message."""
        session = self.sessions.get(message_id) or self._completed.get(message_id)
        if session is None:
            return StreamSnapshot(content="", is_streaming=False)
        return StreamSnapshot(content=session.content, is_streaming=session.is_streaming, error=session.error)

    def is_active(self, message_id: str) -> bool:
        return message_id in self.sessions

    def close(self) -> None:
        """Deactivate every session."""
        for message_id in list(self.sessions) + list(self._completed):
            self.deactivate(message_id)

    def _is_current(self, session: StreamSession) -> bool:
        current = self.sessions.get(session.message_id)
        return session.active and current is not None and current.generation == session.generation

    def _stop(self, session: StreamSession) -> None:
        session.active = False
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
        session.settled.set()

    def _start(self, session: StreamSession) -> None:
        task = asyncio.get_running_loop().create_task(self._resume(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule(self, session: StreamSession) -> None:
        loop = asyncio.get_running_loop()
        session.timer = loop.call_later(self.resume_interval, self._poll, session)

    def _poll(self, session: StreamSession) -> None:
        session.timer = None
        if not self._is_current(session):
            return
        session.state = StreamState.RESUMING
        self._start(session)

    async def _resume(self, session: StreamSession) -> None:
        from_position = session.position
        try:
            result = await self.store.resume_stream(session.message_id, from_position)
        except TransportError as exc:
            if self._is_current(session):
                self._fail(session, exc)
            return
        except Exception as exc:
            # Anything else from the store still has to reach the error state, or retry() is dead
            logger.exception("Unexpected resume failure for %s", session.message_id)
            if self._is_current(session):
                error = TransportError(f"Resume of {session.message_id} failed: {exc}")
                error.__cause__ = exc
                self._fail(session, error)
            return

        if not self._is_current(session):
            logger.debug("Discarding resume response for stale generation %s of %s",
                         session.generation, session.message_id)
            return

        try:
            content = session.tracker.apply(result.delta, result.new_position)
        except StreamError as exc:
            self._fail(session, exc)
            return

        if result.is_complete:
            await self._complete(session)
            return

        session.state = StreamState.STREAMING
        if self.on_content_update:
            self.on_content_update(session.message_id, content, True)
        self._schedule(session)

    async def _complete(self, session: StreamSession, stopped: bool = False) -> None:
        message_id = session.message_id
        session.state = StreamState.COMPLETE
        session.error = None
        session.active = False
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
        self.sessions.pop(message_id, None)
        self._completed[message_id] = session
        logger.info("Stream of %s %s at position %s",
                    message_id, "stopped" if stopped else "complete", session.position)

        if self.on_content_update:
            self.on_content_update(message_id, session.content, False)
        if not session.completion_marked:
            session.completion_marked = True
            try:
                if stopped:
                    await self.store.stop_stream(message_id)
                else:
                    await self.store.mark_stream_complete(message_id)
            except TransportError as exc:
                logger.warning("Failed to mark %s complete: %s", message_id, exc)
        if self.on_complete:
            self.on_complete(message_id, session.content)
        session.settled.set()

    def _fail(self, session: StreamSession, error: ThreadlineError) -> None:
        session.state = StreamState.ERROR
        session.error = error
        if isinstance(error, StreamError):
            logger.error("Stream of %s aborted: %s", session.message_id, error)
        else:
            logger.warning("Stream of %s interrupted at position %s: %s",
                           session.message_id, session.position, error)
        if self.on_error:
            self.on_error(session.message_id, error)
        session.settled.set()
