import asyncio
import json

import pytest

from relaystream.transport import ChatTransport, StreamParams


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def wire(*records: dict) -> str:
    """Concatenate records the way the gateway writes them: no separator."""
    return "".join(json.dumps(r) for r in records)


def split_every(data: str | bytes, size: int) -> list[bytes]:
    """Split *data* into byte chunks of *size* (the last may be shorter)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return [data[i:i + size] for i in range(0, len(data), size)]


# ---------------------------------------------------------------------------
# Fake byte source
# ---------------------------------------------------------------------------

class FakeByteSource:
    """Async byte source that yields pre-split chunks. No network.

    After the chunks run out it either ends, raises ``error``, or (with
    ``hang=True``) blocks forever like a stalled connection.
    """

    def __init__(
        self,
        chunks: list[bytes | str],
        hang: bool = False,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.hang = hang
        self.error = error
        self.delay = delay
        self.reads = 0
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.chunks:
            self.reads += 1
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self.close_count += 1


# ---------------------------------------------------------------------------
# Mock transport
# ---------------------------------------------------------------------------

class MockTransport(ChatTransport):
    """Transport that hands out pre-queued byte sources."""

    def __init__(self):
        self.sources: list[FakeByteSource] = []
        self.open_log: list[dict] = []
        self.stop_log: list[str] = []
        self.open_error: Exception | None = None

    async def open_stream(self, session_id, message_id, params: StreamParams | None = None):
        self.open_log.append({
            "session_id": session_id, "message_id": message_id, "params": params,
        })
        if self.open_error is not None:
            raise self.open_error
        return self.sources.pop(0)

    async def stop(self, session_id):
        self.stop_log.append(session_id)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def content(text: str) -> dict:
    return {"type": "content", "content": text}


def done(message: dict | None = None, usage: dict | None = None) -> dict:
    record = {"type": "done"}
    if message is not None:
        record["message"] = message
    if usage is not None:
        record["usage"] = usage
    return record


HELLO_USAGE = {
    "input_tokens": 10,
    "output_tokens": 5,
    "input_cost": 0.0001,
    "output_cost": 0.0002,
}

SEARCH_RECORDS = [
    {"type": "tool_start", "tool_name": "search"},
    {"type": "tool_call", "tool_name": "search", "tool_call_id": "c1", "args_delta": '{"q":'},
    {"type": "tool_call", "tool_call_id": "c1", "args_delta": '"cats"}', "args_complete": True},
    {"type": "tool_result", "tool_call_id": "c1", "tool_result": "3 hits"},
]


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def hello_world_wire():
    return wire(
        content("Hello "),
        content("world"),
        done(
            message={"content": "Hello world", "status": "completed"},
            usage=HELLO_USAGE,
        ),
    )


@pytest.fixture
def search_wire():
    return wire(*SEARCH_RECORDS)
