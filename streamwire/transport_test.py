"""Tests for the httpx transport boundary (transport.py).

Validates:
- Streaming requests: forced stream mode, no timeout, config forwarding
- HTTP error statuses become StreamHTTPError after the body is read
- Reader resolution order: data, body, the response itself
- ChunkReader / ByteStream lifecycle
"""

import asyncio
import gzip
import json

import httpx
import pytest

from streamwire.cancellation import AbortController, AbortError
from streamwire.errors import REQUEST_ERROR, UNSUPPORTED_STREAM, StreamError, StreamHTTPError
from streamwire.transport import ByteStream, ChunkReader, HttpxTransport, StreamResponse, resolve_reader


def run(coro):
    return asyncio.run(coro)


async def _chunks(*parts):
    for part in parts:
        yield part


def _client(handler):
    return httpx.AsyncClient(base_url="http://test", transport=httpx.MockTransport(handler))


async def _read_all(reader):
    out = []
    while True:
        chunk = await reader.read()
        if chunk is None:
            return out
        out.append(chunk)


# ── HttpxTransport.send ───────────────────────────────────────────────


class TestSend:
    def test_streams_body_chunks(self):
        def handler(request):
            return httpx.Response(200, content=_chunks(b"one", b"", b"two"))

        async def scenario():
            async with _client(handler) as client:
                response = await HttpxTransport(client).send({"url": "/events"})
                assert isinstance(response, StreamResponse)
                assert response.status_code == 200
                reader = resolve_reader(response)
                chunks = await _read_all(reader)
                await reader.aclose()
                return chunks

        assert run(scenario()) == [b"one", b"two"]

    def test_content_encoding_decoded(self):
        body = gzip.compress(b"data: hello\n\ndata: world\n\n")

        def handler(request):
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip", "Content-Type": "text/event-stream"},
                content=_chunks(body[:10], body[10:]),
            )

        async def scenario():
            async with _client(handler) as client:
                response = await HttpxTransport(client).send({"url": "/events"})
                reader = resolve_reader(response)
                chunks = await _read_all(reader)
                await reader.aclose()
                return b"".join(chunks)

        assert run(scenario()) == b"data: hello\n\ndata: world\n\n"

    def test_timeout_disabled(self):
        seen = {}

        def handler(request):
            seen["timeout"] = request.extensions.get("timeout")
            return httpx.Response(200, content=b"")

        async def scenario():
            async with httpx.AsyncClient(
                base_url="http://test", timeout=5.0, transport=httpx.MockTransport(handler)
            ) as client:
                response = await HttpxTransport(client).send({"url": "/", "timeout": 3})
                await resolve_reader(response).aclose()

        run(scenario())
        assert seen["timeout"] == {"connect": None, "read": None, "write": None, "pool": None}

    def test_forwards_method_params_headers_and_json(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["header"] = request.headers.get("x-trace")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ok")

        async def scenario():
            async with _client(handler) as client:
                response = await HttpxTransport(client).send({
                    "method": "post",
                    "url": "/chat",
                    "params": {"q": "1"},
                    "headers": {"X-Trace": "abc"},
                    "json": {"prompt": "hi"},
                })
                await resolve_reader(response).aclose()

        run(scenario())
        assert seen == {
            "method": "POST",
            "url": "http://test/chat?q=1",
            "header": "abc",
            "body": {"prompt": "hi"},
        }

    def test_error_status_raises_with_body(self):
        def handler(request):
            return httpx.Response(503, content=b"upstream down")

        async def scenario():
            async with _client(handler) as client:
                await HttpxTransport(client).send({"url": "/events"})

        with pytest.raises(StreamHTTPError) as exc_info:
            run(scenario())
        error = exc_info.value
        assert error.status_code == 503
        assert error.code == REQUEST_ERROR
        assert error.retryable is True
        assert error.url == "http://test/events"
        assert "upstream down" in str(error)

    def test_error_body_truncated(self):
        def handler(request):
            return httpx.Response(500, content=b"x" * 1000)

        async def scenario():
            async with _client(handler) as client:
                await HttpxTransport(client).send({"url": "/"})

        with pytest.raises(StreamHTTPError) as exc_info:
            run(scenario())
        assert len(exc_info.value.body) == 200

    def test_aborted_signal_never_sends(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        async def scenario():
            controller = AbortController()
            controller.abort()
            async with _client(handler) as client:
                await HttpxTransport(client).send({"url": "/"}, controller.signal)

        with pytest.raises(AbortError):
            run(scenario())
        assert calls == []

    def test_buffered_request(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True})

        async def scenario():
            async with _client(handler) as client:
                response = await HttpxTransport(client).request({"url": "/status"})
                return response.json()

        assert run(scenario()) == {"ok": True}


# ── Reader resolution ─────────────────────────────────────────────────


class _Readable:
    def __init__(self, name):
        self.name = name

    def get_reader(self):
        return self.name


class _Shape:
    def __init__(self, **attrs):
        self.__dict__.update(attrs)


class TestResolveReader:
    def test_prefers_data(self):
        response = _Shape(data=_Readable("data"), body=_Readable("body"))
        assert resolve_reader(response) == "data"

    def test_falls_back_to_body(self):
        response = _Shape(data=None, body=_Readable("body"))
        assert resolve_reader(response) == "body"

    def test_skips_data_without_reader(self):
        response = _Shape(data={"parsed": "json"}, body=_Readable("body"))
        assert resolve_reader(response) == "body"

    def test_response_itself(self):
        assert resolve_reader(_Readable("self")) == "self"

    def test_unwrapped_byte_stream(self):
        stream = ByteStream(_chunks(b"x"))
        assert isinstance(resolve_reader(stream), ChunkReader)

    def test_unsupported(self):
        with pytest.raises(StreamError) as exc_info:
            resolve_reader(_Shape(data="text body"))
        assert exc_info.value.code == UNSUPPORTED_STREAM


# ── Reader lifecycle ──────────────────────────────────────────────────


class TestChunkReader:
    def test_single_reader_per_stream(self):
        stream = ByteStream(_chunks(b"x"))
        stream.get_reader()
        assert stream.locked
        with pytest.raises(RuntimeError):
            stream.get_reader()

    def test_read_after_release_fails(self):
        async def scenario():
            reader = ByteStream(_chunks(b"a", b"b")).get_reader()
            assert await reader.read() == b"a"
            reader.release()
            await reader.read()

        with pytest.raises(RuntimeError):
            run(scenario())

    def test_aclose_closes_once(self):
        closed = []

        async def close():
            closed.append(True)

        async def scenario():
            reader = ByteStream(_chunks(b"a"), close).get_reader()
            await reader.aclose()
            await reader.aclose()
            return reader.released

        assert run(scenario()) is True
        assert closed == [True]
