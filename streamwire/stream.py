"""
stream.py — Cancellable, retrying streamed HTTP requests

Public surface:
  create_instance(config)        httpx.AsyncClient with defaults, wrapped in StreamClient
  attach_stream(client)          wrap an existing httpx.AsyncClient
  create_stream_request(t)       stream(options, on_chunk, on_complete, on_error) -> cancel
  open_stream(...)               same, but returns the StreamSession

Lifecycle of a session:
  PENDING -> ACTIVE (request dispatched, again on every retry)
  ACTIVE  -> COMPLETED | FAILED | CANCELLED

Only request establishment is retried. Once bytes are flowing, a read
failure is reported as-is.
Every outcome lands in on_complete / on_error; nothing is raised out of the
session task.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from streamwire.cancellation import AbortController, AbortError, AbortSignal
from streamwire.config_loader import DEFAULT_CONFIG, StreamOptions, deep_merge, resolve_stream_options
from streamwire.errors import (
    CANCELLED,
    CANCELLED_MESSAGE,
    READ_ERROR,
    REQUEST_ERROR,
    UNSUPPORTED_STREAM,
    UNSUPPORTED_STREAM_MESSAGE,
    StreamError,
)
from streamwire.transport import ChunkReader, HttpxTransport, resolve_reader

logger = logging.getLogger("streamwire.stream")

OnChunk = Callable[[str], None]
OnComplete = Callable[[], None]
OnError = Callable[[StreamError], None]
CancelFunction = Callable[[], None]

# httpx.AsyncClient keyword arguments accepted by create_instance()
_CLIENT_KEYS = (
    "base_url",
    "headers",
    "params",
    "cookies",
    "timeout",
    "follow_redirects",
    "verify",
    "transport",
)


class SessionState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)


class StreamSession:
    """One in-flight streaming request.

    Owns its AbortController, reader and retry counter; nothing here is
    shared between sessions. All mutation happens on the session task except
    cancel(), which only flips flags and triggers the abort.
    """

    def __init__(
        self,
        transport: Any,
        config: Dict[str, Any],
        options: StreamOptions,
        on_chunk: Optional[OnChunk] = None,
        on_complete: Optional[OnComplete] = None,
        on_error: Optional[OnError] = None,
    ):
        self.transport = transport
        self.config = config
        self.options = options
        self.max_retries = options.retry
        self.retry_delay = options.retry_delay
        self.attempts = 0
        self.state = SessionState.PENDING
        self.controller = AbortController()
        self.reader: Optional[ChunkReader] = None

        self._on_chunk = on_chunk
        self._on_complete = on_complete
        self._on_error = on_error
        self._external_signal: Optional[AbortSignal] = options.signal
        self._external_listener: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._cancel_requested = False

    @property
    def signal(self) -> AbortSignal:
        return self.controller.signal

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    # --- Lifecycle ---

    def start(self) -> asyncio.Task:
        """Bridge the external signal and schedule the session task."""
        external = self._external_signal
        if external is not None:
            if external.aborted:
                self.controller.abort(external.reason)
            else:
                self._external_listener = self._on_external_abort
                external.add_listener(self._external_listener)

        self.signal.add_listener(self._interrupt)
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def wait(self) -> None:
        """Wait for the session task to finish, whatever the outcome."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def cancel(self) -> None:
        """Stop the session and report CANCELLED_MESSAGE through on_error.

        Only the first call has any effect, and a session that already
        completed or failed is left alone.
        """
        if self._cancel_requested or self.done:
            return
        self._cancel_requested = True
        self.state = SessionState.CANCELLED

        self._detach_external()
        self.controller.abort(CANCELLED_MESSAGE)
        if self.reader is not None:
            self.reader.release()

        logger.debug("Stream %s cancelled manually", self._describe())
        self._notify(self._on_error, StreamError(code=CANCELLED, message=CANCELLED_MESSAGE))

    def _on_external_abort(self) -> None:
        self.controller.abort(self._external_signal.reason)

    def _interrupt(self) -> None:
        # Not started yet, or cancelled from inside a callback: the session
        # sees the abort at its next check instead
        task = self._task
        if not self._running or task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _run(self) -> None:
        self._running = True
        try:
            if self.signal.aborted:
                self._mark_cancelled()
                return

            reader = await self._establish()
            if reader is None:
                return
            await self._pump(reader)
        except asyncio.CancelledError:
            if not self.signal.aborted:
                raise
            task = asyncio.current_task()
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
            self._mark_cancelled()
        finally:
            await self._release()

    # --- Establishment ---

    def _request_config(self) -> Dict[str, Any]:
        return {**self.config, "stream": True, "timeout": None}

    async def _establish(self) -> Optional[ChunkReader]:
        """Issue the request, retrying failures up to max_retries times."""
        while True:
            if self.signal.aborted:
                self._mark_cancelled()
                return None
            self.state = SessionState.ACTIVE
            try:
                response = await self.transport.send(self._request_config(), self.signal)
            except Exception as e:
                if self._is_abort(e):
                    self._mark_cancelled()
                    return None

                if self.attempts < self.max_retries:
                    self.attempts += 1
                    logger.info(
                        "Stream %s failed to establish (%s), retry %d/%d in %dms",
                        self._describe(),
                        e,
                        self.attempts,
                        self.max_retries,
                        self.retry_delay,
                    )
                    await asyncio.sleep(self.options.retry_delay_seconds)
                    continue

                self._fail(self._establish_error(e))
                return None

            try:
                self.reader = resolve_reader(response)
            except StreamError as e:
                await self._close_response(response)
                self._fail(e)
                return None
            except Exception as e:
                await self._close_response(response)
                self._fail(StreamError(code=UNSUPPORTED_STREAM, message=f"{UNSUPPORTED_STREAM_MESSAGE}: {e}"))
                return None
            return self.reader

    @staticmethod
    def _establish_error(error: Exception) -> StreamError:
        if isinstance(error, StreamError):
            return error
        return StreamError(
            code=REQUEST_ERROR,
            message=str(error) or "Stream request failed",
            retryable=isinstance(error, (httpx.TimeoutException, httpx.NetworkError)),
        )

    @staticmethod
    async def _close_response(response: Any) -> None:
        aclose = getattr(response, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.warning("Failed to close unusable stream response", exc_info=True)

    # --- Pump ---

    async def _pump(self, reader: ChunkReader) -> None:
        """Read, decode and deliver chunks until end of stream."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                value = await reader.read()
                if value is None:
                    self._deliver(decoder.decode(b"", final=True))
                    break
                self._deliver(decoder.decode(value))
        except Exception as e:
            if self._is_abort(e):
                self._mark_cancelled()
                return
            self._fail(StreamError(code=READ_ERROR, message=f"Read stream failed: {e}"))
            return

        self._complete()

    def _deliver(self, text: str) -> None:
        self.signal.throw_if_aborted()
        if text and self._on_chunk is not None:
            self._on_chunk(text)

    # --- Terminal transitions ---

    def _is_abort(self, error: BaseException) -> bool:
        return isinstance(error, AbortError) or self.signal.aborted

    def _complete(self) -> None:
        if self.done:
            return
        self.state = SessionState.COMPLETED
        self._detach_external()
        logger.debug("Stream %s completed", self._describe())
        self._notify(self._on_complete)

    def _fail(self, error: StreamError) -> None:
        if self.done:
            return
        self.state = SessionState.FAILED
        self._detach_external()
        logger.error("Stream request failed: %s", error)
        self._notify(self._on_error, error)

    def _mark_cancelled(self) -> None:
        if self.done:
            return
        self.state = SessionState.CANCELLED
        self._detach_external()
        logger.debug("Stream %s aborted", self._describe())

    def _detach_external(self) -> None:
        if self._external_signal is not None and self._external_listener is not None:
            self._external_signal.remove_listener(self._external_listener)
            self._external_listener = None

    async def _release(self) -> None:
        self._detach_external()
        self.signal.remove_listener(self._interrupt)
        reader, self.reader = self.reader, None
        if reader is None:
            return
        try:
            await reader.aclose()
        except Exception:
            logger.warning("Failed to close stream reader", exc_info=True)

    # --- Helpers ---

    def _notify(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Stream callback %r raised", callback)

    def _describe(self) -> str:
        method = str(self.config.get("method", "GET")).upper()
        return f"{method} {self.config.get('url', '')}"


# --- Entry points ---


def _as_transport(transport: Any) -> Any:
    if isinstance(transport, httpx.AsyncClient):
        return HttpxTransport(transport)
    return transport


def open_stream(
    transport: Any,
    options: Optional[Dict[str, Any]] = None,
    on_chunk: Optional[OnChunk] = None,
    on_complete: Optional[OnComplete] = None,
    on_error: Optional[OnError] = None,
) -> StreamSession:
    """Start a streaming session on the running event loop and return it.

    Raises ValueError for invalid retry / retry_delay values; every other
    failure is reported through the callbacks.
    """
    config, stream_options = resolve_stream_options(options)
    session = StreamSession(
        _as_transport(transport), config, stream_options, on_chunk, on_complete, on_error
    )
    session.start()
    return session


def create_stream_request(
    transport: Union[httpx.AsyncClient, Any],
) -> Callable[..., Awaitable[CancelFunction]]:
    """Bind a stream() coroutine function to a transport or httpx.AsyncClient."""
    transport = _as_transport(transport)

    async def stream(
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[OnChunk] = None,
        on_complete: Optional[OnComplete] = None,
        on_error: Optional[OnError] = None,
    ) -> CancelFunction:
        """Start streaming and return the cancel function without waiting for a response."""
        session = open_stream(transport, options, on_chunk, on_complete, on_error)
        return session.cancel

    return stream


class StreamClient:
    """httpx.AsyncClient plus stream_request(); other attributes pass through.

    httpx already owns the name `stream` (a context manager), so the
    callback-driven entry point lives under `stream_request`.
    """

    def __init__(self, client: httpx.AsyncClient, transport: Any = None):
        self.client = client
        self.transport = transport if transport is not None else HttpxTransport(client)
        self.stream_request = create_stream_request(self.transport)

    def open_stream(
        self,
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[OnChunk] = None,
        on_complete: Optional[OnComplete] = None,
        on_error: Optional[OnError] = None,
    ) -> StreamSession:
        return open_stream(self.transport, options, on_chunk, on_complete, on_error)

    async def fetch(self, config: Dict[str, Any]) -> httpx.Response:
        """Buffered request from a config dict."""
        return await self.transport.request(config)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "StreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def __getattr__(self, name: str) -> Any:
        if name == "client":
            raise AttributeError(name)
        return getattr(self.client, name)


def create_instance(config: Optional[Dict[str, Any]] = None) -> StreamClient:
    """Create a StreamClient over a new httpx.AsyncClient.

    `config` is deep-merged over DEFAULT_CONFIG; keys httpx.AsyncClient does
    not accept are ignored.
    """
    merged = deep_merge(DEFAULT_CONFIG, config or {})
    kwargs = {key: merged[key] for key in _CLIENT_KEYS if merged.get(key) is not None}
    return StreamClient(httpx.AsyncClient(**kwargs))


def attach_stream(client: httpx.AsyncClient) -> StreamClient:
    """Give an existing httpx.AsyncClient the stream_request() entry point."""
    return StreamClient(client)
