"""Cancellable, retrying HTTP response streaming over httpx, with SSE framing."""

from streamwire.cancellation import AbortController, AbortError, AbortSignal
from streamwire.config_loader import DEFAULT_CONFIG, StreamOptions
from streamwire.errors import CANCELLED_MESSAGE, StreamError, StreamHTTPError
from streamwire.sse_decoder import SSEEvent, create_sse_parser, parse_sse_chunk, parse_sse_event, sse_decode
from streamwire.stream import (
    CancelFunction,
    SessionState,
    StreamClient,
    StreamSession,
    attach_stream,
    create_instance,
    create_stream_request,
    open_stream,
)
from streamwire.transport import ByteStream, ChunkReader, HttpxTransport, StreamResponse, resolve_reader

__all__ = [
    "AbortController",
    "AbortError",
    "AbortSignal",
    "ByteStream",
    "CANCELLED_MESSAGE",
    "CancelFunction",
    "ChunkReader",
    "DEFAULT_CONFIG",
    "HttpxTransport",
    "SSEEvent",
    "SessionState",
    "StreamClient",
    "StreamError",
    "StreamHTTPError",
    "StreamOptions",
    "StreamResponse",
    "StreamSession",
    "attach_stream",
    "create_instance",
    "create_sse_parser",
    "create_stream_request",
    "open_stream",
    "parse_sse_chunk",
    "parse_sse_event",
    "resolve_reader",
    "sse_decode",
]
