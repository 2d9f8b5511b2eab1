"""Error types surfaced through a stream's on_error callback."""

from __future__ import annotations

from typing import Any, Dict, Optional

# Error codes
UNSUPPORTED_STREAM = "unsupported_stream"
REQUEST_ERROR = "request_error"
READ_ERROR = "read_error"
CANCELLED = "cancelled"

CANCELLED_MESSAGE = "Stream request cancelled manually"
UNSUPPORTED_STREAM_MESSAGE = (
    "Response does not expose a readable stream: the transport does not support "
    "streaming, the server did not stream, or the response was transformed"
)


class StreamError(Exception):
    """Structured error with code, status_code and retryable flag."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class StreamHTTPError(StreamError):
    """Upstream answered a streaming request with status >= 400."""

    def __init__(self, status_code: int, url: str, body: str = ""):
        super().__init__(
            code=REQUEST_ERROR,
            message=f"HTTP {status_code}: {body or '(empty body)'}",
            status_code=status_code,
            retryable=True,
        )
        self.url = url
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["url"] = self.url
        return result
