"""Cooperative cancellation: AbortController / AbortSignal.

A signal is a one-way, idempotent flag. Code that can be cancelled either
polls `aborted`, calls `throw_if_aborted()` at its suspension points, or
registers a listener that cancels whatever it is waiting on. Triggering the
flag never kills work directly.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger("streamwire.cancellation")

DEFAULT_ABORT_REASON = "The operation was aborted"


class AbortError(Exception):
    """Raised by throw_if_aborted() once the signal has fired."""

    def __init__(self, reason: Any = None):
        super().__init__(str(reason) if reason is not None else DEFAULT_ABORT_REASON)
        self.reason = reason


class AbortSignal:
    """Read side of an AbortController."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback fired once on abort.

        Registering on an already-aborted signal does not fire the callback;
        check `aborted` first.
        """
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def throw_if_aborted(self) -> None:
        if self._aborted:
            raise AbortError(self._reason)

    def _abort(self, reason: Any) -> bool:
        if self._aborted:
            return False
        self._aborted = True
        self._reason = reason if reason is not None else DEFAULT_ABORT_REASON

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Abort listener %r failed", listener)
        return True


class AbortController:
    """Owns an AbortSignal and the single primitive that triggers it."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: Optional[Any] = None) -> bool:
        """Abort the signal. Safe to call any number of times.

        Returns True only for the call that actually flipped the flag.
        """
        return self.signal._abort(reason)
