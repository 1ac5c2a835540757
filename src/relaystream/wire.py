"""Encode stream events back into the gateway wire format.

The gateway writes JSON objects back-to-back with no separator.  These
helpers produce exactly that, which is handy for fixtures and for
replaying a captured session through the decoder.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

from pydantic import BaseModel

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


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def to_record(event: StreamEvent) -> dict[str, Any]:
    """Return the wire record for *event*, omitting absent fields."""
    record: dict[str, Any] = {"type": event.kind}
    if isinstance(event, ContentEvent):
        record["content"] = _dump(event.items) if event.items is not None else event.text
    elif isinstance(event, ThinkingEvent):
        record["content"] = event.text
    elif isinstance(event, ToolStartEvent):
        record.update(tool_name=event.tool_name, tool_call_id=event.call_id)
    elif isinstance(event, ToolCallEvent):
        record.update(
            tool_name=event.tool_name,
            tool_call_id=event.call_id,
            args_delta=event.args_delta,
            args_complete=event.args_complete or None,
            tool_args=event.arguments,
        )
    elif isinstance(event, ToolResultEvent):
        record.update(
            tool_name=event.tool_name,
            tool_call_id=event.call_id,
            tool_result=_dump(event.result),
            tool_status="error" if event.is_error else "completed",
            error_detail=event.error_detail,
        )
    elif isinstance(event, DoneEvent):
        record.update(message=_dump(event.final_message), usage=_dump(event.usage))
    elif isinstance(event, ErrorEvent):
        record.update(error_type=event.error_type, error_detail=event.detail)
    return {k: v for k, v in record.items() if v is not None}


def encode_events(events: Iterable[StreamEvent]) -> str:
    """Concatenate the wire records for *events* with no separator."""
    return "".join(json.dumps(to_record(event)) for event in events)


async def wire_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[bytes]:
    """Convert a StreamEvent async iterator into wire-format bytes."""
    async for event in event_stream:
        yield json.dumps(to_record(event)).encode("utf-8")
