#!/usr/bin/env python3
"""
cli.py — Stream an HTTP response to stdout

Usage: streamwire <url> [--method M] [--header K:V] [--data JSON] [--sse]
                        [--retry N] [--retry-delay MS] [--config PATH] [-v]

With --sse each event is printed as one JSON object per line; otherwise
decoded text is written as it arrives.

Config file (YAML):
  client:   passed to create_instance() (base_url, headers, timeout, ...)
  stream:   request + stream options (method, headers, retry, retry_delay, ...)
Command line flags win over the file.

Exit codes:
  0 = stream completed
  1 = stream failed (request, read or unsupported stream)
  2 = cancelled (Ctrl-C)
  4 = invalid arguments or config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, TextIO

from streamwire.config_loader import deep_merge, load_config
from streamwire.errors import CANCELLED, StreamError
from streamwire.sse_decoder import SSEEvent, create_sse_parser
from streamwire.stream import create_instance

logger = logging.getLogger("streamwire.cli")

EXIT_OK = 0
EXIT_STREAM_ERROR = 1
EXIT_CANCELLED = 2
EXIT_INVALID = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamwire", description="Stream an HTTP response to stdout")
    parser.add_argument("url")
    parser.add_argument("--method", "-X", default=None)
    parser.add_argument("--header", "-H", action="append", default=[], metavar="KEY:VALUE")
    parser.add_argument("--data", "-d", default=None, help="JSON request body")
    parser.add_argument("--sse", action="store_true", help="decode Server-Sent Events")
    parser.add_argument("--retry", type=int, default=None)
    parser.add_argument("--retry-delay", type=int, default=None, metavar="MS")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def parse_headers(values: List[str]) -> Dict[str, str]:
    headers = {}
    for value in values:
        key, sep, content = value.partition(":")
        if not sep or not key.strip():
            raise ValueError(f"Invalid header '{value}', expected KEY:VALUE")
        headers[key.strip()] = content.strip()
    return headers


def build_stream_options(args: argparse.Namespace, file_options: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {"url": args.url}
    if args.method:
        overrides["method"] = args.method
    if args.header:
        overrides["headers"] = parse_headers(args.header)
    if args.data is not None:
        try:
            overrides["json"] = json.loads(args.data)
        except json.JSONDecodeError as e:
            raise ValueError(f"--data is not valid JSON: {e}") from e
    if args.retry is not None:
        overrides["retry"] = args.retry
    if args.retry_delay is not None:
        overrides["retry_delay"] = args.retry_delay
    return deep_merge(file_options, overrides)


def _format_event(event: SSEEvent) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False)


async def run_stream(
    client_config: Dict[str, Any],
    options: Dict[str, Any],
    sse: bool = False,
    out: TextIO = sys.stdout,
) -> int:
    """Run one stream to completion and return the exit code."""
    finished = asyncio.Event()
    outcome = {"code": EXIT_OK}

    def write(text: str) -> None:
        out.write(text)
        out.flush()

    if sse:
        on_chunk = create_sse_parser(lambda event: write(_format_event(event) + "\n"))
    else:
        on_chunk = write

    def on_complete() -> None:
        finished.set()

    def on_error(error: StreamError) -> None:
        print(f"ERROR: {error}", file=sys.stderr)
        outcome["code"] = EXIT_CANCELLED if error.code == CANCELLED else EXIT_STREAM_ERROR
        finished.set()

    async with create_instance(client_config) as client:
        cancel = await client.stream_request(options, on_chunk, on_complete, on_error)
        try:
            await finished.wait()
        except asyncio.CancelledError:
            cancel()
            raise

    return outcome["code"]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        file_config = load_config(args.config) if args.config else {}
        client_config = file_config.get("client") or {}
        file_options = file_config.get("stream") or {}
        if not isinstance(client_config, dict) or not isinstance(file_options, dict):
            raise ValueError("'client' and 'stream' config sections must be mappings")
        options = build_stream_options(args, file_options)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID

    try:
        return asyncio.run(run_stream(client_config, options, sse=args.sse))
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
