"""Progressive tool-call arguments.

Tool arguments arrive as text fragments (``args_delta``) long before
they form valid JSON.  The :class:`ProgressiveArgsAccumulator`
concatenates the fragments per call id so consumers can show the
arguments while they are still being written.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, replace
from typing import Any

from relaystream.events import ToolCallEvent

_CLOSERS = {"{": "}", "[": "]"}


def _close_partial(text: str) -> str:
    """Close any open string, object or array at the end of *text*."""
    stack = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]" and stack:
            stack.pop()
    if in_string:
        text += '"'
    else:
        text = text.rstrip(",: \t\r\n")
    return text + "".join(reversed(stack))


def parse_partial(text: str) -> Any:
    """Best-effort parse of possibly incomplete JSON.

    Returns the parsed value, or ``None`` if the text cannot be parsed
    even after closing open strings and brackets.
    """
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_close_partial(text))
    except json.JSONDecodeError:
        return None


@dataclass
class ProgressiveToolArgs:
    """Arguments received so far for one tool call."""

    call_id: str
    tool_name: str | None = None
    accumulated_args: str = ""
    is_complete: bool = False
    arguments: dict[str, Any] | None = None

    @property
    def is_valid_json(self) -> bool:
        if not self.accumulated_args.strip():
            return False
        try:
            json.loads(self.accumulated_args)
        except json.JSONDecodeError:
            return False
        return True

    @property
    def parsed_args(self) -> Any:
        """Explicit argument object if the producer sent one, else a
        best-effort parse of the accumulated text."""
        if self.arguments is not None:
            return self.arguments
        return parse_partial(self.accumulated_args)


def _copy(entry: ProgressiveToolArgs) -> ProgressiveToolArgs:
    return replace(entry, arguments=copy.deepcopy(entry.arguments))


class ProgressiveArgsAccumulator:
    """Concatenates argument deltas per tool-call id.

    One accumulator belongs to one streaming session; call ids are not
    unique across sessions, so :meth:`clear_all` must run before a new
    session starts.
    """

    def __init__(self) -> None:
        self._args: dict[str, ProgressiveToolArgs] = {}

    def __len__(self) -> int:
        return len(self._args)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._args

    def _entry(self, call_id: str) -> ProgressiveToolArgs:
        if call_id not in self._args:
            self._args[call_id] = ProgressiveToolArgs(call_id=call_id)
        return self._args[call_id]

    def add_delta(
        self, call_id: str, delta_text: str, tool_name: str | None = None,
    ) -> None:
        entry = self._entry(call_id)
        entry.accumulated_args += delta_text
        if tool_name:
            entry.tool_name = tool_name

    def set_arguments(self, call_id: str, arguments: dict[str, Any]) -> None:
        """Record the producer's fully parsed argument object."""
        entry = self._entry(call_id)
        entry.arguments = copy.deepcopy(arguments)
        entry.is_complete = True

    def mark_complete(self, call_id: str) -> bool:
        """Flag *call_id* as complete.  Unknown ids are ignored."""
        entry = self._args.get(call_id)
        if entry is None:
            return False
        entry.is_complete = True
        return True

    def feed(self, event: ToolCallEvent) -> None:
        """Fold one ``tool_call`` event into the accumulated state."""
        if event.call_id is None:
            return
        self.add_delta(event.call_id, event.args_delta or "", event.tool_name)
        if event.arguments is not None:
            self.set_arguments(event.call_id, event.arguments)
        if event.args_complete:
            self.mark_complete(event.call_id)

    def get(self, call_id: str) -> ProgressiveToolArgs | None:
        entry = self._args.get(call_id)
        return _copy(entry) if entry is not None else None

    def snapshot(self) -> dict[str, ProgressiveToolArgs]:
        return {call_id: _copy(entry) for call_id, entry in self._args.items()}

    def clear(self, call_id: str) -> None:
        self._args.pop(call_id, None)

    def clear_all(self) -> None:
        self._args.clear()
