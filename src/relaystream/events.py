"""Typed events decoded from the gateway stream.

Every record on the wire carries a ``type`` discriminator.  The
classifier maps each record to exactly one of the variants below;
``sequence_index`` is assigned later by the aggregator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from relaystream.message import ContentItem, FinalMessage, Usage


@dataclass
class StreamEvent:
    """Base for all stream events."""

    kind: ClassVar[str] = ""


@dataclass
class ContentEvent(StreamEvent):
    """A fragment of assistant text."""

    kind: ClassVar[str] = "content"

    text: str = ""
    items: list[ContentItem] | None = None


@dataclass
class ThinkingEvent(StreamEvent):
    """The model is reasoning; ``text`` is an optional status line."""

    kind: ClassVar[str] = "thinking"

    text: str | None = None


@dataclass
class ToolStartEvent(StreamEvent):
    kind: ClassVar[str] = "tool_start"

    tool_name: str | None = None
    call_id: str | None = None


@dataclass
class ToolCallEvent(StreamEvent):
    """A tool invocation, possibly carrying a fragment of its arguments.

    ``args_delta`` is raw argument text to append; ``arguments`` is set
    when the producer sends the fully parsed argument object.
    """

    kind: ClassVar[str] = "tool_call"

    tool_name: str | None = None
    call_id: str | None = None
    args_delta: str | None = None
    args_complete: bool = False
    arguments: dict[str, Any] | None = None


@dataclass
class ToolResultEvent(StreamEvent):
    kind: ClassVar[str] = "tool_result"

    tool_name: str | None = None
    call_id: str | None = None
    result: Any = None
    is_error: bool = False
    error_detail: str | None = None


@dataclass
class DoneEvent(StreamEvent):
    """Terminal event: generation finished."""

    kind: ClassVar[str] = "done"

    final_message: FinalMessage | None = None
    usage: Usage | None = None


@dataclass
class ErrorEvent(StreamEvent):
    """Terminal event: the producer reported a failure."""

    kind: ClassVar[str] = "error"

    error_type: str = "unknown_error"
    detail: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


EVENT_TYPES: dict[str, type[StreamEvent]] = {
    cls.kind: cls
    for cls in (
        ContentEvent,
        ThinkingEvent,
        ToolStartEvent,
        ToolCallEvent,
        ToolResultEvent,
        DoneEvent,
        ErrorEvent,
    )
}
