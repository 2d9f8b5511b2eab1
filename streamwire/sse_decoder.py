"""
sse_decoder.py — Server-Sent Events framing for streamed response bodies

Three entry points over one frame parser:
  parse_sse_event()   one complete frame block -> SSEEvent (or None)
  parse_sse_chunk()   stateless: complete text chunk -> data payloads
  create_sse_parser() stateful: arbitrary chunk boundaries -> SSEEvent objects

sse_decode() wraps the stateful parser as an async generator for code that
consumes httpx byte streams directly.

Frame blocks are delimited by a blank line ("\\n\\n"). Unrecognized lines are
ignored, never rejected.

See: https://html.spec.whatwg.org/multipage/server-sent-events.html#parsing-an-event-stream
"""

from __future__ import annotations

import codecs
import re
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterable, Callable, Dict, List, Optional, Union

FRAME_SEPARATOR = "\n\n"

# Leading base-10 integer; trailing text after the digits is ignored
_RETRY_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class SSEEvent:
    """A single Server-Sent Event. Absent fields stay None."""
    event: Optional[str] = None
    data: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("event", self.event),
                ("data", self.data),
                ("id", self.id),
                ("retry", self.retry),
            )
            if value is not None
        }


def parse_sse_event(block: str) -> Optional[SSEEvent]:
    """Parse one frame block into an SSEEvent.

    Returns None when the block carries no recognized field. Comment lines
    (leading ':') and unknown field names are skipped. A malformed retry value
    is ignored without affecting the other lines.
    """
    event: Optional[str] = None
    event_id: Optional[str] = None
    retry: Optional[int] = None
    data_lines: List[str] = []

    for line in block.split("\n"):
        if line.startswith("data:"):
            value = line[5:]
            # Only a single leading space is part of the field separator
            data_lines.append(value[1:] if value.startswith(" ") else value)
        elif line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("id:"):
            event_id = line[3:].strip()
        elif line.startswith("retry:"):
            value = line[6:].strip()
            match = _RETRY_RE.match(value)
            if match:
                retry = int(match.group())

    data = "\n".join(data_lines) if data_lines else None

    if event is None and data is None and event_id is None and retry is None:
        return None
    return SSEEvent(event=event, data=data, id=event_id, retry=retry)


def parse_sse_chunk(sse_text: str, on_message: Callable[[str], None]) -> None:
    """Split a complete SSE chunk and hand each non-empty data payload to on_message.

    No state is kept between calls: a trailing block without its closing
    blank line is parsed as-is, and a block split across two calls is lost.
    Use create_sse_parser() for transport chunks.
    """
    for block in sse_text.split(FRAME_SEPARATOR):
        if not block:
            continue
        parsed = parse_sse_event(block)
        if parsed is not None and parsed.data:
            on_message(parsed.data)


def create_sse_parser(on_message: Callable[[SSEEvent], None]) -> Callable[[str], None]:
    """Build a stateful parser that tolerates frame blocks split across chunks.

    The returned callable accepts successive text chunks. The last segment of
    the buffer after splitting is held back until a later chunk closes it, so
    a final block with no terminating blank line is never emitted.
    """
    buffer = ""

    def feed(chunk: str) -> None:
        nonlocal buffer
        buffer += chunk
        parts = buffer.split(FRAME_SEPARATOR)
        buffer = parts.pop()

        for block in parts:
            if not block.strip():
                continue
            parsed = parse_sse_event(block)
            if parsed is not None:
                on_message(parsed)

    return feed


async def sse_decode(
    stream: AsyncIterable[Union[str, bytes]],
) -> AsyncGenerator[SSEEvent, None]:
    """Decode SSE events from an async stream of text or byte chunks.

    Byte chunks are decoded as UTF-8 incrementally, so multi-byte characters
    may straddle chunk boundaries. Yields exactly what create_sse_parser()
    would emit for the same text, in order.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending: List[SSEEvent] = []
    feed = create_sse_parser(pending.append)

    async for chunk in stream:
        text = decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        if text:
            feed(text)
        while pending:
            yield pending.pop(0)

    tail = decoder.decode(b"", final=True)
    if tail:
        feed(tail)
    while pending:
        yield pending.pop(0)
