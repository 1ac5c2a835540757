"""One streaming response, from placeholder to final message.

A :class:`StreamSession` is created when generation is triggered and
owns everything that lives for that response: the tokenizer, the
aggregator and its progressive argument store, the idle supervisor and
the cancellation token.  Records are pulled from the byte source one at
a time; each pull is a suspension point guarded by the token, and each
record is classified and folded synchronously before the next pull.

Whatever ends the session (``done``, ``error``, transport failure, idle
timeout or cancellation) the first trigger wins, the message status
changes exactly once and the byte source is released exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Callable

from relaystream.aggregator import StreamAggregator, StreamPhase
from relaystream.classifier import InvalidRecordError, classify
from relaystream.errors import ProtocolError, StreamCancelled, StreamError, TransportError
from relaystream.instrumentation import record_error, record_outcome, record_usage, stream_span
from relaystream.message import MessageStatus, StreamingMessage
from relaystream.reconciler import reconcile, synthesize_failure, synthesize_final
from relaystream.streaming import ProgressiveArgsAccumulator
from relaystream.supervisor import DEFAULT_IDLE_TIMEOUT, CancellationToken, CompletionSupervisor
from relaystream.tokenizer import RecordTokenizer, iter_records
from relaystream.transport import ByteSource

logger = logging.getLogger(__name__)

TRANSPORT_FAILURE_MESSAGE = "Failed to stream response"

Listener = Callable[[StreamingMessage], None]


def _placeholder_id() -> str:
    return f"placeholder-{int(time.time() * 1000)}"


class StreamSession:
    """Decode and aggregate one streamed assistant reply.

    Args:
        session_id: Conversation the reply belongs to.
        message_id: User message the reply answers.
        idle_timeout: Seconds without any record before the session is
            forced to ``completed``.
        accumulator: Progressive argument store.  Cleared when the
            session starts.
    """

    def __init__(
        self,
        session_id: str,
        message_id: str,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        accumulator: ProgressiveArgsAccumulator | None = None,
    ):
        self.session_id = session_id
        self.message_id = message_id
        self.token = CancellationToken()
        self.tokenizer = RecordTokenizer()
        self.aggregator = StreamAggregator(accumulator)
        self.supervisor = CompletionSupervisor(self._on_idle_timeout, idle_timeout)
        self.error: StreamError | None = None
        self.skipped = 0
        self.finished = asyncio.Event()
        self._message = StreamingMessage(
            id=_placeholder_id(),
            session_id=session_id,
            parent_id=message_id,
        )
        self._final: StreamingMessage | None = None
        self._listeners: list[Listener] = []
        self._released = False

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return not self.aggregator.phase.is_terminal

    @property
    def phase(self) -> StreamPhase:
        return self.aggregator.phase

    def message(self) -> StreamingMessage:
        """Current projection of the reply.  Always a copy."""
        if self._final is not None:
            return self._final.model_copy(deep=True)
        return self._message.model_copy(update={
            "content": self.aggregator.text,
            "aggregate": self.aggregator.snapshot(),
        })

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with a fresh projection after every change.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait(self) -> StreamingMessage:
        await self.finished.wait()
        return self.message()

    # ------------------------------------------------------------------
    # Driving the stream
    # ------------------------------------------------------------------

    async def run(self, source: ByteSource) -> StreamingMessage:
        """Consume *source* until the session reaches a terminal state."""
        if self.aggregator.phase.is_terminal:
            await self._close_source(source)
            return self.message()

        self.aggregator.start()
        self.supervisor.reset()
        records = iter_records(source, self.tokenizer)

        async with stream_span(self.session_id, self.message_id) as span:
            try:
                await self._pump(records)
            except StreamCancelled:
                logger.debug(f"Stream for {self.message_id} stopped: {self.token.reason}")
            except Exception as e:
                logger.error(f"Stream for {self.message_id} failed: {e}")
                record_error(span, e)
                self.fail(e)
            finally:
                self.supervisor.stop()
                await self._release(records, source)

            if self.is_active:
                # Source ended without a terminal record.
                logger.info(f"Stream for {self.message_id} ended without a done event")
                if self.aggregator.finish():
                    self._settle(synthesize_final(self._message, self.aggregator.snapshot()))

            final = self.message()
            record_usage(span, final.usage)
            record_outcome(span, final.status.value, self.aggregator.sequence_count)
        return final

    async def _pump(self, records: AsyncIterator[dict[str, Any]]) -> None:
        while True:
            try:
                obj = await self.token.guard(records.__anext__())
            except StopAsyncIteration:
                return
            if self.token.cancelled:
                return
            self._handle(obj)
            if not self.is_active:
                return

    def _handle(self, obj: dict[str, Any]) -> None:
        self.supervisor.reset()
        try:
            event = classify(obj)
        except InvalidRecordError as e:
            self.skipped += 1
            logger.warning(f"Dropping record: {e}")
            return

        if self._message.status is MessageStatus.PENDING:
            self._message = self._message.model_copy(update={"status": MessageStatus.PROCESSING})
        self.aggregator.ingest(event)

        phase = self.aggregator.phase
        if phase is StreamPhase.COMPLETED:
            self._settle(reconcile(
                self._message, self.aggregator.snapshot(), self.aggregator.final_event,
            ))
        elif phase is StreamPhase.FAILED:
            error = self.aggregator.snapshot().error
            self.error = ProtocolError(error.type, error.detail)
            self._settle(synthesize_failure(
                self._message, self.aggregator.snapshot(), error.detail, error.type,
            ))
        else:
            self._notify()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Stop the session at the user's request.

        The reply keeps whatever was assembled and is marked
        ``completed``.  Returns ``False`` if the session had already
        ended.
        """
        if not self.aggregator.cancel():
            return False
        logger.info(f"Stream for {self.message_id} cancelled")
        self._settle(synthesize_final(self._message, self.aggregator.snapshot()))
        self.token.cancel("user")
        return True

    def fail(self, exc: BaseException) -> bool:
        """End the session because the byte source failed."""
        if not self.aggregator.fail("stream_error", str(exc)):
            return False
        if isinstance(exc, TransportError):
            self.error = exc
        else:
            self.error = TransportError(str(exc))
            self.error.__cause__ = exc
        self._settle(synthesize_failure(
            self._message, self.aggregator.snapshot(),
            TRANSPORT_FAILURE_MESSAGE, "stream_error",
        ))
        self.token.cancel("transport_error")
        return True

    def _on_idle_timeout(self) -> None:
        if not self.aggregator.finish():
            return
        self._settle(synthesize_final(self._message, self.aggregator.snapshot()))
        self.token.cancel("timeout")

    def _settle(self, message: StreamingMessage) -> None:
        self._final = message
        self.supervisor.stop()
        self.finished.set()
        logger.info(f"Stream for {self.message_id} {self.aggregator.phase.value}")
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        projection = self.message()
        for listener in list(self._listeners):
            try:
                listener(projection)
            except Exception:
                logger.exception("Stream listener raised")

    async def _release(self, records, source: ByteSource) -> None:
        if self._released:
            return
        self._released = True
        await records.aclose()
        await self._close_source(source)

    async def _close_source(self, source: ByteSource) -> None:
        aclose = getattr(source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(f"Error releasing stream: {e}")
