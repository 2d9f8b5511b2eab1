"""
transport.py — httpx boundary for streaming requests

One narrow capability: "issue a request from a config dict and hand back
something a chunk reader can be acquired from". HttpxTransport implements it
for httpx.AsyncClient; any object with an async send(config, signal) works
in its place.

Streaming requests always go out with stream=True and no timeout.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx

from streamwire.cancellation import AbortSignal
from streamwire.config_loader import redact_headers
from streamwire.errors import UNSUPPORTED_STREAM, UNSUPPORTED_STREAM_MESSAGE, StreamError, StreamHTTPError

logger = logging.getLogger("streamwire.transport")

# Config keys forwarded to httpx.AsyncClient.build_request
_REQUEST_KEYS = ("params", "headers", "cookies", "content", "data", "files", "json")

ERROR_BODY_LIMIT = 200


# --- Readers ---


class ChunkReader:
    """Sequential reader over a byte stream.

    read() returns the next non-empty chunk, or None at end of stream.
    release() detaches the reader from its stream; aclose() also closes the
    underlying response.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._chunks = chunks
        self._close = close
        self._released = False
        self._closed = False

    @property
    def released(self) -> bool:
        return self._released

    async def read(self) -> Optional[bytes]:
        if self._released:
            raise RuntimeError("Reader has been released")
        while True:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                return None
            if chunk:
                return bytes(chunk)

    def release(self) -> None:
        self._released = True

    async def aclose(self) -> None:
        self._released = True
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()


class ByteStream:
    """Readable byte stream; at most one reader may be acquired."""

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._chunks = chunks
        self._close = close
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def get_reader(self) -> ChunkReader:
        if self._locked:
            raise RuntimeError("ByteStream already has a reader")
        self._locked = True
        return ChunkReader(self._chunks.__aiter__(), self._close)


class StreamResponse:
    """Streamed response: status line, headers and a ByteStream under `data`."""

    def __init__(
        self,
        status_code: int,
        headers: Dict[str, str],
        url: str,
        data: ByteStream,
    ):
        self.status_code = status_code
        self.headers = headers
        self.url = url
        self.data = data

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "StreamResponse":
        return cls(
            status_code=response.status_code,
            headers=dict(response.headers),
            url=str(response.url),
            data=ByteStream(response.aiter_bytes(), response.aclose),
        )


def resolve_reader(response: Any) -> ChunkReader:
    """Acquire a chunk reader from a response.

    Tries response.data, then response.body, then the response itself, and
    uses the first one exposing get_reader(). Interceptor-style code that
    unwraps a response down to its stream still resolves.
    """
    candidates = (
        getattr(response, "data", None),
        getattr(response, "body", None),
        response,
    )
    for candidate in candidates:
        if candidate is None:
            continue
        get_reader = getattr(candidate, "get_reader", None)
        if callable(get_reader):
            return get_reader()
    raise StreamError(code=UNSUPPORTED_STREAM, message=UNSUPPORTED_STREAM_MESSAGE)


# --- Transport ---


def _safe_error_body(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    return text[:ERROR_BODY_LIMIT]


class HttpxTransport:
    """Issues requests through an httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def send(
        self, config: Dict[str, Any], signal: Optional[AbortSignal] = None
    ) -> StreamResponse:
        """Send a streaming request and return once headers have arrived.

        Raises StreamHTTPError for status >= 400 after reading (and closing)
        the error body. Cancellation is observed by cancelling the awaiting
        task; the signal is checked once before anything goes on the wire.
        """
        if signal is not None:
            signal.throw_if_aborted()

        method = str(config.get("method", "GET")).upper()
        url = config.get("url", "")
        kwargs = {key: config[key] for key in _REQUEST_KEYS if config.get(key) is not None}

        request = self.client.build_request(method, url, timeout=None, **kwargs)
        logger.debug(
            "Streaming %s %s headers=%s",
            method,
            request.url,
            redact_headers(dict(request.headers)),
        )

        follow_redirects = config.get("follow_redirects")
        if follow_redirects is None:
            response = await self.client.send(request, stream=True)
        else:
            response = await self.client.send(
                request, stream=True, follow_redirects=follow_redirects
            )

        if response.status_code >= 400:
            try:
                body = _safe_error_body(await response.aread())
            except httpx.HTTPError:
                body = "<unable to read body>"
            finally:
                await response.aclose()
            raise StreamHTTPError(status_code=response.status_code, url=str(request.url), body=body)

        return StreamResponse.from_httpx(response)

    async def request(self, config: Dict[str, Any]) -> httpx.Response:
        """Buffered (non-streaming) request; httpx handles everything."""
        method = str(config.get("method", "GET")).upper()
        kwargs = {key: config[key] for key in _REQUEST_KEYS if config.get(key) is not None}
        if "timeout" in config:
            kwargs["timeout"] = config["timeout"]
        return await self.client.request(method, config.get("url", ""), **kwargs)
