"""Map raw wire records to typed stream events."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

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
from relaystream.message import ContentItem, FinalMessage, Usage, content_text

logger = logging.getLogger(__name__)


class InvalidRecordError(ValueError):
    """A decoded JSON object is not a usable stream record."""


class UnknownRecordError(InvalidRecordError):
    """The record's ``type`` discriminator is missing or not recognised."""


class RawRecord(BaseModel):
    """One JSON object as written by the gateway.

    Every field except ``type`` is optional.  ``None`` means the key was
    absent or null; an empty string is kept as an empty string.
    Unrecognised keys are preserved.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    content: str | list[ContentItem] | None = None
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    args_delta: str | None = None
    args_complete: bool | None = None
    tool_call_id: str | None = None
    tool_status: str | None = None
    tool_result: Any = None
    error_type: str | None = None
    error_detail: str | None = None
    message: FinalMessage | None = None
    usage: Usage | None = None
    timestamp: str | None = None
    extra_data: dict[str, Any] | None = None


def _content(record: RawRecord) -> ContentEvent:
    items = record.content if isinstance(record.content, list) else None
    return ContentEvent(text=content_text(record.content), items=items)


def _thinking(record: RawRecord) -> ThinkingEvent:
    text = None if record.content is None else content_text(record.content)
    return ThinkingEvent(text=text)


def _tool_start(record: RawRecord) -> ToolStartEvent:
    return ToolStartEvent(tool_name=record.tool_name, call_id=record.tool_call_id)


def _tool_call(record: RawRecord) -> ToolCallEvent:
    delta = record.args_delta
    # Older producers send the argument fragment as plain string content.
    if delta is None and isinstance(record.content, str):
        delta = record.content
    return ToolCallEvent(
        tool_name=record.tool_name,
        call_id=record.tool_call_id,
        args_delta=delta,
        args_complete=bool(record.args_complete) or record.tool_args is not None,
        arguments=record.tool_args,
    )


def _tool_result(record: RawRecord) -> ToolResultEvent:
    result = record.tool_result
    if result is None and record.content is not None:
        result = record.content
    return ToolResultEvent(
        tool_name=record.tool_name,
        call_id=record.tool_call_id,
        result=result,
        is_error=record.tool_status == "error" or record.error_detail is not None,
        error_detail=record.error_detail,
    )


def _done(record: RawRecord) -> DoneEvent:
    usage = record.usage
    if usage is None and record.message is not None:
        usage = record.message.usage
    return DoneEvent(final_message=record.message, usage=usage)


def _error(record: RawRecord) -> ErrorEvent:
    detail = record.error_detail
    if detail is None:
        detail = content_text(record.content)
    return ErrorEvent(
        error_type=record.error_type or "unknown_error",
        detail=detail,
        extra=dict(record.extra_data or {}),
    )


_BUILDERS = {
    "content": _content,
    "thinking": _thinking,
    "tool_start": _tool_start,
    "tool_call": _tool_call,
    "tool_result": _tool_result,
    "done": _done,
    "error": _error,
}


def parse_record(obj: dict[str, Any]) -> RawRecord:
    """Validate a decoded JSON object as a :class:`RawRecord`.

    Raises:
        UnknownRecordError: If ``type`` is missing, not a string, or
            not one of the known event kinds.
        InvalidRecordError: If any other field has the wrong shape.
    """
    kind = obj.get("type")
    if not isinstance(kind, str) or kind not in _BUILDERS:
        raise UnknownRecordError(f"Unknown record type: {kind!r}")
    try:
        return RawRecord.model_validate(obj)
    except ValidationError as e:
        raise InvalidRecordError(f"Malformed {kind} record: {e}") from e


def classify(record: RawRecord | dict[str, Any]) -> StreamEvent:
    """Return the typed event for a raw record."""
    if not isinstance(record, RawRecord):
        record = parse_record(record)
    elif record.type not in _BUILDERS:
        raise UnknownRecordError(f"Unknown record type: {record.type!r}")
    return _BUILDERS[record.type](record)
