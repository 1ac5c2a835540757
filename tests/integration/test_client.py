"""Integration tests for the HTTP transport and the StreamingChat entry points.

HTTP is faked with ``httpx.MockTransport``; no network.
"""

import asyncio

import httpx
import pytest

from relaystream.aggregator import StreamPhase
from relaystream.client import StreamingChat
from relaystream.errors import TransportError
from relaystream.message import MessageStatus
from relaystream.session import TRANSPORT_FAILURE_MESSAGE
from relaystream.transport import GatewayTransport, StreamParams
from tests.conftest import FakeByteSource, MockTransport, content, done, split_every, wire


def gateway(handler) -> GatewayTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayTransport(base_url="http://gateway.test/", client=client)


def chunked(data: str, size: int):
    async def body():
        for chunk in split_every(data, size):
            yield chunk
    return body()


# ---------------------------------------------------------------------------
# GatewayTransport
# ---------------------------------------------------------------------------

class TestGatewayTransport:
    @pytest.mark.asyncio
    async def test_open_stream_request(self, hello_world_wire):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return httpx.Response(200, content=hello_world_wire.encode())

        transport = gateway(handler)
        source = await transport.open_stream("s1", "m1", StreamParams(max_tokens=100))
        body = b"".join([chunk async for chunk in source])
        await source.aclose()

        (request,) = requests
        assert request.method == "GET"
        assert request.url.path == "/api/v1/chat/complete/s1/m1/stream"
        assert request.url.params["max_tokens"] == "100"
        assert "temperature" not in request.url.params
        assert request.headers["cache-control"] == "no-store"
        assert body == hello_world_wire.encode()
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = gateway(lambda request: httpx.Response(503))
        with pytest.raises(TransportError) as exc_info:
            await transport.open_stream("s1", "m1")
        assert exc_info.value.status_code == 503
        assert "Service Unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = gateway(handler)
        with pytest.raises(TransportError, match="Failed to open stream"):
            await transport.open_stream("s1", "m1")

    @pytest.mark.asyncio
    async def test_stop_posts(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "stopped"})

        await gateway(handler).stop("s1")
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v1/chat/complete/s1/stop"

    @pytest.mark.asyncio
    async def test_stop_failure_raises(self):
        transport = gateway(lambda request: httpx.Response(404, text="no such session"))
        with pytest.raises(TransportError, match="no such session") as exc_info:
            await transport.stop("s1")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_base_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("RELAY_SERVE_HOST", "http://env-gateway/")
        transport = GatewayTransport()
        assert transport.stop_url("s1") == "http://env-gateway/api/v1/chat/complete/s1/stop"
        await transport.aclose()

    def test_missing_base_url(self, monkeypatch):
        monkeypatch.delenv("RELAY_SERVE_HOST", raising=False)
        with pytest.raises(ValueError, match="RELAY_SERVE_HOST"):
            GatewayTransport()


# ---------------------------------------------------------------------------
# StreamingChat over HTTP
# ---------------------------------------------------------------------------

class TestStreamingChatHttp:
    @pytest.mark.asyncio
    async def test_stream_end_to_end(self, hello_world_wire):
        transport = gateway(
            lambda request: httpx.Response(200, content=chunked(hello_world_wire, 3))
        )
        chat = StreamingChat(transport, "s1")
        final = await chat.stream("m1")

        assert final.status is MessageStatus.COMPLETED
        assert final.content == "Hello world"
        assert final.usage.total_cost == pytest.approx(0.0003)
        assert not chat.is_active
        assert chat.current().content == "Hello world"

    @pytest.mark.asyncio
    async def test_open_failure_marks_message_failed(self):
        chat = StreamingChat(gateway(lambda request: httpx.Response(500)), "s1")
        final = await chat.stream("m1")

        assert final.status is MessageStatus.FAILED
        assert final.error_message == TRANSPORT_FAILURE_MESSAGE
        assert final.error_code == "stream_error"
        assert chat.session.error.status_code == 500


# ---------------------------------------------------------------------------
# StreamingChat lifecycle
# ---------------------------------------------------------------------------

class TestStreamingChat:
    @pytest.mark.asyncio
    async def test_current_before_any_stream(self, mock_transport):
        chat = StreamingChat(mock_transport, "s1")
        assert chat.current() is None
        assert not chat.is_active
        assert await chat.cancel() is False

    @pytest.mark.asyncio
    async def test_params_forwarded(self, mock_transport, hello_world_wire):
        mock_transport.sources.append(FakeByteSource([hello_world_wire]))
        chat = StreamingChat(mock_transport, "s1")
        params = StreamParams(temperature=0.2)
        await chat.stream("m1", params)

        assert mock_transport.open_log == [
            {"session_id": "s1", "message_id": "m1", "params": params},
        ]

    @pytest.mark.asyncio
    async def test_cancel_sends_stop(self, mock_transport):
        source = FakeByteSource([wire(content("partial"))], hang=True)
        mock_transport.sources.append(source)
        chat = StreamingChat(mock_transport, "s1")
        await chat.start("m1")
        await asyncio.sleep(0.02)

        assert chat.is_active
        assert await chat.cancel() is True
        assert mock_transport.stop_log == ["s1"]

        message = chat.current()
        assert message.status is MessageStatus.COMPLETED
        assert message.content == "partial"
        assert chat.session.phase is StreamPhase.CANCELLED
        assert source.close_count == 1

    @pytest.mark.asyncio
    async def test_stop_failure_is_not_fatal(self):
        class FailingStop(MockTransport):
            async def stop(self, session_id):
                raise TransportError("gateway down", status_code=502)

        transport = FailingStop()
        transport.sources.append(FakeByteSource([], hang=True))
        chat = StreamingChat(transport, "s1")
        await chat.start("m1")
        await asyncio.sleep(0.01)

        assert await chat.cancel() is True
        assert chat.current().status is MessageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_new_stream_cancels_active_one(self, mock_transport, hello_world_wire):
        stalled = FakeByteSource([wire(content("first"))], hang=True)
        mock_transport.sources.extend([stalled, FakeByteSource([hello_world_wire])])
        chat = StreamingChat(mock_transport, "s1")

        first = await chat.start("m1")
        await asyncio.sleep(0.02)
        second = await chat.start("m2")
        final = await asyncio.wait_for(second.wait(), timeout=2)

        assert first.phase is StreamPhase.CANCELLED
        assert first.message().content == "first"
        assert stalled.closed
        assert mock_transport.stop_log == ["s1"]
        assert final.content == "Hello world"
        assert final.parent_id == "m2"

    @pytest.mark.asyncio
    async def test_listeners_follow_new_sessions(self, mock_transport):
        mock_transport.sources.extend([
            FakeByteSource([wire(content("a"), done())]),
            FakeByteSource([wire(content("b"), done())]),
        ])
        chat = StreamingChat(mock_transport, "s1")
        finals = []
        chat.subscribe(lambda m: finals.append(m.content) if m.status.is_terminal else None)

        await chat.stream("m1")
        await chat.stream("m2")
        assert finals == ["a", "b"]

    @pytest.mark.asyncio
    async def test_accumulator_reset_between_streams(self, mock_transport):
        mock_transport.sources.extend([
            FakeByteSource([wire(
                {"type": "tool_call", "tool_call_id": "c1", "args_delta": '{"a":'}, done(),
            )]),
            FakeByteSource([wire(content("plain"), done())]),
        ])
        chat = StreamingChat(mock_transport, "s1")
        await chat.stream("m1")
        assert "c1" in chat.accumulator

        await chat.stream("m2")
        assert "c1" not in chat.accumulator
