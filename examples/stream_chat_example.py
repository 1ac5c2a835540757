"""Streaming example: follow one assistant reply as it is generated.

Demonstrates:
- Opening a stream against the gateway with GatewayTransport
- Watching live projections through StreamingChat.subscribe
- Reading the ordered view of text and tool activity once the reply ends
- Replaying a captured wire dump without a gateway (--replay)

Usage:
    RELAY_SERVE_HOST=http://localhost:8000 uv run examples/stream_chat_example.py --session <id> --message <id> --trace
    uv run examples/stream_chat_example.py --replay capture.bin --chunk-size 7
"""

import argparse
import asyncio
import logging
import sys

from relaystream.aggregator import ContentSegment
from relaystream.client import StreamingChat
from relaystream.message import MessageStatus, StreamingMessage
from relaystream.session import StreamSession
from relaystream.transport import GatewayTransport, StreamParams

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s:%(name)s:%(levelname)s:%(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler()
    ]
)


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from relaystream.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def read_file(path: str, chunk_size: int):
    """Byte source over a captured stream, split into fixed-size chunks."""
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk
            await asyncio.sleep(0)


class LivePrinter:
    """Print newly assembled text as each projection arrives."""

    def __init__(self):
        self.printed = 0

    def __call__(self, message: StreamingMessage):
        text = message.text
        sys.stdout.write(text[self.printed:])
        sys.stdout.flush()
        self.printed = len(text)
        if message.status.is_terminal:
            print()


def print_summary(message: StreamingMessage):
    print(f"\n--- {message.status.value} ---")
    if message.aggregate is not None:
        for item in message.aggregate.ordered():
            if isinstance(item, ContentSegment):
                print(f"[{item.sequence_index}] text: {item.text!r}")
            else:
                print(f"[{item.sequence_index}] {item.kind}: {item.tool_name or ''}")
    if message.status is MessageStatus.FAILED:
        print(f"error: {message.error_message} ({message.error_code})")
    if message.usage is not None:
        u = message.usage
        print(
            f"usage: {u.input_tokens} in / {u.output_tokens} out, "
            f"cost {u.total_cost:.6f}"
        )


async def main():
    parser = argparse.ArgumentParser(description="Stream one assistant reply")
    parser.add_argument("--url", default=None, help="Gateway URL (default: $RELAY_SERVE_HOST)")
    parser.add_argument("--session", default="demo-session")
    parser.add_argument("--message", default="demo-message")
    parser.add_argument("--max-tokens", type=int, default=None)
    parser.add_argument("--temperature", type=float, default=None)
    parser.add_argument("--idle-timeout", type=float, default=30.0)
    parser.add_argument("--replay", default=None, help="Replay a captured wire dump")
    parser.add_argument("--chunk-size", type=int, default=64)
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("relaystream-example")

    printer = LivePrinter()

    if args.replay:
        session = StreamSession(args.session, args.message, idle_timeout=args.idle_timeout)
        session.subscribe(printer)
        final = await session.run(read_file(args.replay, args.chunk_size))
        print_summary(final)
        return

    transport = GatewayTransport(args.url)
    chat = StreamingChat(transport, args.session, idle_timeout=args.idle_timeout)
    chat.subscribe(printer)
    params = StreamParams(max_tokens=args.max_tokens, temperature=args.temperature)
    try:
        final = await chat.stream(args.message, params)
    except asyncio.CancelledError:
        await chat.cancel()
        raise
    finally:
        await transport.aclose()
    print_summary(final)


if __name__ == "__main__":
    asyncio.run(main())
