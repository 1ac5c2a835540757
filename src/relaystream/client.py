"""Entry points for streaming assistant replies in one conversation."""

from __future__ import annotations

import asyncio
import logging

from relaystream.errors import TransportError
from relaystream.message import StreamingMessage
from relaystream.session import Listener, StreamSession
from relaystream.streaming import ProgressiveArgsAccumulator
from relaystream.supervisor import DEFAULT_IDLE_TIMEOUT
from relaystream.transport import ChatTransport, StreamParams

logger = logging.getLogger(__name__)


class StreamingChat:
    """Start, observe and cancel streamed replies for a conversation.

    At most one :class:`StreamSession` is active at a time.  Starting a
    new stream while one is running cancels the running one first.

    Args:
        transport: Opens byte streams and sends stop requests.
        session_id: Conversation id.
        idle_timeout: Inactivity threshold passed to each session.
    """

    def __init__(
        self,
        transport: ChatTransport,
        session_id: str,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.transport = transport
        self.session_id = session_id
        self.idle_timeout = idle_timeout
        self.accumulator = ProgressiveArgsAccumulator()
        self.session: StreamSession | None = None
        self._task: asyncio.Task | None = None
        self._listeners: list[Listener] = []

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    def current(self) -> StreamingMessage | None:
        """Projection of the latest reply, or ``None`` before any stream."""
        return self.session.message() if self.session is not None else None

    def subscribe(self, listener: Listener) -> None:
        """Register *listener* for this and every later session."""
        self._listeners.append(listener)
        if self.session is not None and self.session.is_active:
            self.session.subscribe(listener)

    async def start(
        self, message_id: str, params: StreamParams | None = None,
    ) -> StreamSession:
        """Begin streaming the reply to *message_id* in the background."""
        if self.is_active:
            await self.cancel()
        session = StreamSession(
            self.session_id,
            message_id,
            idle_timeout=self.idle_timeout,
            accumulator=self.accumulator,
        )
        for listener in self._listeners:
            session.subscribe(listener)
        self.session = session
        self._task = asyncio.create_task(self._run(session, params))
        return session

    async def stream(
        self, message_id: str, params: StreamParams | None = None,
    ) -> StreamingMessage:
        """Stream the reply to *message_id* and return the final message."""
        await self.start(message_id, params)
        return await self._task

    async def cancel(self) -> bool:
        """Cancel the active stream and ask the gateway to stop generating.

        Returns ``False`` if nothing was streaming.
        """
        session = self.session
        if session is None or not session.cancel():
            return False
        try:
            await self.transport.stop(self.session_id)
        except TransportError as e:
            logger.warning(f"Stop request for {self.session_id} failed: {e}")
        if self._task is not None:
            await self._task
        return True

    async def _run(
        self, session: StreamSession, params: StreamParams | None,
    ) -> StreamingMessage:
        try:
            source = await self.transport.open_stream(
                self.session_id, session.message_id, params,
            )
        except TransportError as e:
            logger.error(f"Could not open stream for {session.message_id}: {e}")
            session.fail(e)
            return session.message()
        return await session.run(source)
