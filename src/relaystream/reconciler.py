"""Replace assembled streaming content with the authoritative final record."""

from __future__ import annotations

import logging

from relaystream.aggregator import AggregateState
from relaystream.events import DoneEvent
from relaystream.message import MessageStatus, StreamingMessage

logger = logging.getLogger(__name__)


def _status(value: str | None) -> MessageStatus:
    try:
        status = MessageStatus(value) if value is not None else MessageStatus.COMPLETED
    except ValueError:
        logger.warning(f"Unknown final status {value!r}, treating as completed")
        return MessageStatus.COMPLETED
    if not status.is_terminal:
        return MessageStatus.COMPLETED
    return status


def reconcile(
    message: StreamingMessage,
    aggregate: AggregateState,
    done: DoneEvent | None,
) -> StreamingMessage:
    """Build the final message for a stream that ended with ``done``.

    When the ``done`` event carries a final message its content, status
    and usage win over whatever was assembled from content segments.
    Otherwise the assembled text is used and the status is
    ``completed``.  A missing ``total_cost`` is the sum of the input and
    output costs.
    """
    final = done.final_message if done is not None else None
    usage = done.usage if done is not None else None
    if final is None:
        return synthesize_final(message, aggregate, usage=usage)

    update = {
        "status": _status(final.status),
        "content": final.content if final.content is not None else aggregate.text,
        "usage": final.usage or usage,
        "error_message": final.error_message,
        "error_code": final.error_code,
        "aggregate": aggregate,
    }
    if final.id is not None:
        update["id"] = final.id
    if final.extra_data:
        update["extra_data"] = {**message.extra_data, **final.extra_data}
    return message.model_copy(update=update)


def synthesize_final(
    message: StreamingMessage,
    aggregate: AggregateState,
    usage=None,
) -> StreamingMessage:
    """Complete *message* from the assembled content alone.

    Used when the producer's ``done`` event has no final message, and
    for streams ended by timeout or cancellation.
    """
    return message.model_copy(update={
        "status": MessageStatus.COMPLETED,
        "content": aggregate.text,
        "usage": usage if usage is not None else message.usage,
        "aggregate": aggregate,
    })


def synthesize_failure(
    message: StreamingMessage,
    aggregate: AggregateState,
    error_message: str,
    error_code: str | None = None,
) -> StreamingMessage:
    """Mark *message* failed, keeping any text assembled before the failure."""
    return message.model_copy(update={
        "status": MessageStatus.FAILED,
        "content": aggregate.text,
        "error_message": error_message,
        "error_code": error_code,
        "aggregate": aggregate,
    })
