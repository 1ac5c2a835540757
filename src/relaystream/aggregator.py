"""Fold classified stream events into an ordered aggregate.

The :class:`StreamAggregator` owns the :class:`AggregateState` of one
streaming response.  Each accepted event gets the next sequence index;
that index alone decides display order, so content and tool activity
interleave exactly as the producer emitted them.

Phases::

    idle -> streaming -> completed | failed | cancelled

Terminal phases are absorbing: once reached, later events and
termination requests are ignored.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from operator import attrgetter
from typing import Any, Callable, ClassVar

from relaystream.events import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    ToolStartEvent,
)
from relaystream.streaming import ProgressiveArgsAccumulator

logger = logging.getLogger(__name__)


class StreamPhase(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StreamPhase.COMPLETED, StreamPhase.FAILED, StreamPhase.CANCELLED,
        )


@dataclass
class ContentSegment:
    """A run of consecutive content events."""

    kind: ClassVar[str] = "content"

    text: str
    sequence_index: int
    complete: bool = False


@dataclass(frozen=True)
class ToolBlock:
    """One tool event (or the end-of-stream marker) as received.

    ``kind`` is ``tool_start``, ``tool_call``, ``tool_result`` or
    ``done``.  Blocks are never merged; grouping by call id happens at
    read time in :meth:`StreamAggregator.tool_executions`.
    """

    kind: str
    sequence_index: int
    tool_name: str | None = None
    call_id: str | None = None
    args_delta: str | None = None
    arguments: dict[str, Any] | None = None
    result: Any = None
    is_error: bool = False
    error_detail: str | None = None


@dataclass
class ThinkingState:
    active: bool = False
    text: str | None = None


@dataclass
class ErrorInfo:
    type: str
    detail: str


@dataclass
class AggregateState:
    content_segments: list[ContentSegment] = field(default_factory=list)
    tool_blocks: list[ToolBlock] = field(default_factory=list)
    thinking: ThinkingState = field(default_factory=ThinkingState)
    error: ErrorInfo | None = None
    last_sequence_index: int = -1

    @property
    def text(self) -> str:
        return "".join(segment.text for segment in self.content_segments)

    def ordered(self) -> list[ContentSegment | ToolBlock]:
        """Segments and blocks merged by sequence index."""
        return sorted(
            [*self.content_segments, *self.tool_blocks],
            key=attrgetter("sequence_index"),
        )


@dataclass
class ToolExecution:
    """All blocks for one tool call, grouped for display.

    ``status`` is ``starting``, ``calling``, ``completed`` or ``error``.
    """

    call_id: str | None
    tool_name: str | None
    status: str = "starting"
    arguments: Any = None
    result: Any = None
    error: str | None = None


class StreamAggregator:
    """State machine for one streaming response.

    Args:
        accumulator: Progressive argument store for this session.  It is
            cleared when the aggregator starts.
    """

    def __init__(self, accumulator: ProgressiveArgsAccumulator | None = None):
        self.args = accumulator if accumulator is not None else ProgressiveArgsAccumulator()
        self.phase = StreamPhase.IDLE
        self.final_event: DoneEvent | None = None
        self._state = AggregateState()
        self._open: ContentSegment | None = None
        self._counter = 0
        self._transitions: dict[str, Callable[[Any, int], None]] = {
            ContentEvent.kind: self._on_content,
            ThinkingEvent.kind: self._on_thinking,
            ToolStartEvent.kind: self._on_tool,
            ToolCallEvent.kind: self._on_tool,
            ToolResultEvent.kind: self._on_tool,
            ErrorEvent.kind: self._on_error,
            DoneEvent.kind: self._on_done,
        }

    @property
    def sequence_count(self) -> int:
        """Number of events accepted so far."""
        return self._counter

    @property
    def text(self) -> str:
        return self._state.text

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.phase is not StreamPhase.IDLE:
            raise RuntimeError(f"Cannot start aggregator in phase {self.phase.value}")
        self.args.clear_all()
        self.phase = StreamPhase.STREAMING

    def ingest(self, event: StreamEvent) -> bool:
        """Fold *event* into the aggregate.

        Returns ``False`` (and changes nothing) unless the aggregator is
        streaming.
        """
        if self.phase is not StreamPhase.STREAMING:
            logger.debug(f"Ignoring {event.kind} event in phase {self.phase.value}")
            return False
        index = self._counter
        self._counter += 1
        self._state.last_sequence_index = index
        self._transitions[event.kind](event, index)
        return True

    def finish(self) -> bool:
        """Force completion without a ``done`` event."""
        return self._terminate(StreamPhase.COMPLETED)

    def fail(self, error_type: str, detail: str) -> bool:
        if self.phase.is_terminal:
            return False
        self._state.error = ErrorInfo(type=error_type, detail=detail)
        return self._terminate(StreamPhase.FAILED)

    def cancel(self) -> bool:
        return self._terminate(StreamPhase.CANCELLED)

    def _terminate(self, phase: StreamPhase) -> bool:
        if self.phase.is_terminal:
            return False
        self._close_segment()
        self._state.thinking.active = False
        self.phase = phase
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _close_segment(self) -> None:
        if self._open is not None:
            self._open.complete = True
            self._open = None

    def _on_content(self, event: ContentEvent, index: int) -> None:
        if self._open is None:
            self._open = ContentSegment(text="", sequence_index=index)
            self._state.content_segments.append(self._open)
        self._open.text += event.text
        self._state.thinking.active = False

    def _on_thinking(self, event: ThinkingEvent, index: int) -> None:
        self._state.thinking = ThinkingState(active=True, text=event.text)
        self._close_segment()

    def _on_tool(self, event, index: int) -> None:
        self._close_segment()
        fields: dict[str, Any] = {}
        if isinstance(event, ToolCallEvent):
            fields = {"args_delta": event.args_delta, "arguments": event.arguments}
            self.args.feed(event)
        elif isinstance(event, ToolResultEvent):
            fields = {
                "result": event.result,
                "is_error": event.is_error,
                "error_detail": event.error_detail,
            }
            if event.call_id is not None:
                self.args.mark_complete(event.call_id)
        self._state.tool_blocks.append(ToolBlock(
            kind=event.kind,
            sequence_index=index,
            tool_name=event.tool_name,
            call_id=event.call_id,
            **fields,
        ))

    def _on_error(self, event: ErrorEvent, index: int) -> None:
        self._close_segment()
        logger.info(f"Producer reported {event.error_type}: {event.detail}")
        self.fail(event.error_type, event.detail)

    def _on_done(self, event: DoneEvent, index: int) -> None:
        self._close_segment()
        self._state.tool_blocks.append(ToolBlock(kind=event.kind, sequence_index=index))
        self.final_event = event
        self._terminate(StreamPhase.COMPLETED)

    # ------------------------------------------------------------------
    # Read side.  Everything returned here is a copy.
    # ------------------------------------------------------------------

    def snapshot(self) -> AggregateState:
        return copy.deepcopy(self._state)

    def view(self) -> list[ContentSegment | ToolBlock]:
        """Flattened, sequence-ordered copy of segments and tool blocks."""
        return self.snapshot().ordered()

    def tool_executions(self) -> list[ToolExecution]:
        """Group tool blocks by call id, in order of first appearance.

        A ``tool_start`` without a call id is claimed by the next call
        or result for the same tool name.
        """
        executions: list[ToolExecution] = []
        by_id: dict[str, ToolExecution] = {}
        unclaimed: list[ToolExecution] = []

        for block in self._state.tool_blocks:
            if block.kind == DoneEvent.kind:
                continue
            if block.kind == ToolStartEvent.kind:
                execution = ToolExecution(call_id=block.call_id, tool_name=block.tool_name)
                executions.append(execution)
                if block.call_id is not None:
                    by_id[block.call_id] = execution
                else:
                    unclaimed.append(execution)
                continue

            execution = by_id.get(block.call_id) if block.call_id is not None else None
            if execution is None:
                execution = next(
                    (e for e in unclaimed if block.tool_name in (None, e.tool_name)),
                    None,
                )
                if execution is not None:
                    unclaimed.remove(execution)
                    execution.call_id = block.call_id
                else:
                    execution = ToolExecution(call_id=block.call_id, tool_name=block.tool_name)
                    executions.append(execution)
                if block.call_id is not None:
                    by_id[block.call_id] = execution
            if execution.tool_name is None:
                execution.tool_name = block.tool_name

            if block.kind == ToolCallEvent.kind:
                if execution.status == "starting":
                    execution.status = "calling"
                progressive = self.args.get(block.call_id) if block.call_id else None
                if progressive is not None:
                    execution.arguments = progressive.parsed_args
                elif block.arguments is not None:
                    execution.arguments = copy.deepcopy(block.arguments)
            else:
                execution.status = "error" if block.is_error else "completed"
                execution.result = copy.deepcopy(block.result)
                if block.is_error:
                    execution.error = block.error_detail or str(block.result)
        return executions
