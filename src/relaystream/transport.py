from collections.abc import AsyncIterator
import logging
import os

import httpx
from pydantic import BaseModel

from relaystream.errors import TransportError

logger = logging.getLogger(__name__)

ByteSource = AsyncIterator[bytes]


class StreamParams(BaseModel):
    """Optional generation parameters sent with a stream request."""

    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None

    def to_query(self) -> dict:
        return self.model_dump(exclude_none=True)


class ChatTransport:
    """Opens response streams and stops generation on the gateway."""

    async def open_stream(
            self,
            session_id: str,
            message_id: str,
            params: StreamParams | None = None,
    ) -> ByteSource:
        raise NotImplementedError

    async def stop(self, session_id: str) -> None:
        raise NotImplementedError


class ResponseStream:
    """Byte source over a streaming ``httpx`` response.

    Read failures surface as :class:`TransportError`.  ``aclose()``
    releases the connection whether or not the body was read.
    """

    def __init__(self, response: httpx.Response):
        self.response = response
        self._chunks = response.aiter_bytes()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self._chunks.__anext__()
        except httpx.HTTPError as e:
            raise TransportError(f"Stream read failed: {e}") from e

    async def aclose(self) -> None:
        await self.response.aclose()


class GatewayTransport(ChatTransport):
    """HTTP transport for the relay gateway.

    Args:
        base_url: Gateway root URL.  Falls back to ``RELAY_SERVE_HOST``.
        timeout: Read timeout in seconds for the underlying client.
        client: Pre-built ``httpx.AsyncClient`` (tests, shared pools).
    """

    def __init__(
            self,
            base_url: str | None = None,
            timeout: float = 600.0,
            client: httpx.AsyncClient | None = None,
    ):
        if not base_url:
            base_url = os.getenv("RELAY_SERVE_HOST")
        if not base_url:
            raise ValueError(
                "No gateway URL given and RELAY_SERVE_HOST is not set"
            )
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=20.0)
        )

    def stream_url(self, session_id: str, message_id: str) -> str:
        return (
            f"{self.base_url}/api/v1/chat/complete/"
            f"{session_id}/{message_id}/stream"
        )

    def stop_url(self, session_id: str) -> str:
        return f"{self.base_url}/api/v1/chat/complete/{session_id}/stop"

    async def open_stream(
            self,
            session_id: str,
            message_id: str,
            params: StreamParams | None = None,
    ) -> ResponseStream:
        request = self.client.build_request(
            "GET",
            self.stream_url(session_id, message_id),
            params=params.to_query() if params else None,
            headers={"Cache-Control": "no-store"},
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to open stream: {e}") from e

        if response.is_error:
            await response.aclose()
            raise TransportError(
                response.reason_phrase or "Failed to stream response",
                status_code=response.status_code,
            )
        logger.debug(f"Opened stream for message {message_id}")
        return ResponseStream(response)

    async def stop(self, session_id: str) -> None:
        try:
            response = await self.client.post(self.stop_url(session_id))
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to stop chat completion: {e}") from e
        if response.is_error:
            raise TransportError(
                f"Failed to stop chat completion: {response.text}",
                status_code=response.status_code,
            )

    async def aclose(self) -> None:
        await self.client.aclose()
