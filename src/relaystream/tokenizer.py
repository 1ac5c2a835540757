"""Incremental tokenizer for back-to-back JSON records.

The gateway writes JSON objects one after another on a single stream
with no delimiter and no length prefix, and the transport may split
them at arbitrary byte boundaries.  :class:`RecordTokenizer` keeps an
append-only text buffer plus a read cursor and hands out one complete
object at a time.

Resynchronisation policy: when the text starting at a ``{`` cannot be
an object (as opposed to being an object that has not fully arrived
yet) the cursor moves exactly one character past that ``{`` and the
scan restarts.  At most the malformed record is lost and the stream
never stalls on it.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import AsyncIterator, Iterator
from typing import Any

logger = logging.getLogger(__name__)

RESYNC_STEP = 1

_decoder = json.JSONDecoder()
_LITERALS = ("true", "false", "null", "NaN", "Infinity", "-Infinity")
_NUMBER_TAIL = re.compile(r"[0-9.eE+\-]+")


def _is_truncated(text: str, error: json.JSONDecodeError) -> bool:
    """Return True if *error* means the input ended too early.

    A truncated object is a prefix of some valid object, so the failure
    sits at the end of the buffer: past the last character, inside an
    unterminated string, or on a partial literal or number.
    """
    if error.pos >= len(text):
        return True
    if error.msg.startswith("Unterminated string"):
        return True
    tail = text[error.pos:]
    if error.msg.startswith("Invalid \\uXXXX escape"):
        return len(tail) <= 6
    if any(literal.startswith(tail) for literal in _LITERALS):
        return True
    return _NUMBER_TAIL.fullmatch(tail) is not None


def _excerpt(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class RecordTokenizer:
    """Pull-based splitter of a growing text buffer into JSON objects.

    Feed text with :meth:`feed`, then drain complete objects with
    :meth:`records`.  Call :meth:`compact` after each chunk to drop text
    that has already been consumed, and :meth:`flush` once the source is
    exhausted.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._cursor = 0
        self.resyncs = 0

    @property
    def pending(self) -> str:
        """Text received but not yet consumed."""
        return self._buffer[self._cursor:]

    def feed(self, text: str) -> None:
        self._buffer += text

    def next_record(self, final: bool = False) -> dict[str, Any] | None:
        """Consume and return the next complete object, or ``None``.

        ``None`` means no complete object is available yet; partial input
        is kept for the next call.  With ``final=True`` partial input is
        treated as malformed, since no more text will arrive.
        """
        while True:
            start = self._buffer.find("{", self._cursor)
            if start == -1:
                # Nothing here can begin a record.
                self._cursor = len(self._buffer)
                return None
            self._cursor = start
            if not final and self._buffer.find("}", start) == -1:
                return None
            try:
                obj, end = _decoder.raw_decode(self._buffer, start)
            except json.JSONDecodeError as e:
                if not final and _is_truncated(self._buffer, e):
                    return None
                self._resync(start, e)
                continue
            self._cursor = end
            return obj

    def records(self, final: bool = False) -> Iterator[dict[str, Any]]:
        """Yield every complete object currently in the buffer."""
        while (obj := self.next_record(final=final)) is not None:
            yield obj

    def compact(self) -> None:
        """Drop consumed text so the buffer only holds unread input."""
        if self._cursor:
            self._buffer = self._buffer[self._cursor:]
            self._cursor = 0

    def flush(self) -> Iterator[dict[str, Any]]:
        """Yield what can still be salvaged at end of stream, then reset."""
        yield from self.records(final=True)
        leftover = self.pending.strip()
        if leftover:
            logger.debug(f"Discarding {len(leftover)} trailing characters")
        self._buffer = ""
        self._cursor = 0

    def _resync(self, start: int, error: json.JSONDecodeError) -> None:
        self.resyncs += 1
        logger.warning(
            f"Skipping malformed record ({error.msg}): "
            f"{_excerpt(self._buffer[start:])!r}"
        )
        self._cursor = start + RESYNC_STEP


async def iter_records(
    source: AsyncIterator[bytes | str],
    tokenizer: RecordTokenizer | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Decode a chunked byte stream into JSON objects, in order.

    Bytes are decoded as UTF-8 incrementally, so a multi-byte character
    split across two chunks is reassembled.
    """
    tokenizer = tokenizer if tokenizer is not None else RecordTokenizer()
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in source:
        text = chunk if isinstance(chunk, str) else utf8.decode(chunk)
        tokenizer.feed(text)
        for obj in tokenizer.records():
            yield obj
        tokenizer.compact()
    tokenizer.feed(utf8.decode(b"", final=True))
    for obj in tokenizer.flush():
        yield obj
