"""Cancellation and deadlines for blocking operations.

An OperationContext is handed down from the caller to every blocking call
(lock waits, poll sleeps, HTTP requests). Cancelling it wakes any pending
wait immediately; a deadline caps every wait at the time left.

Usage:
    stop = OperationContext()              # process-wide stop signal
    ctx = stop.child(timeout=30 * 60)      # per-operation deadline

    if ctx.wait(5.0):
        ...                                # woke early: cancelled
    ctx.check()                            # raises if cancelled or expired
"""
from __future__ import annotations

import threading
import time
import weakref
from typing import Callable, Optional

from .errors import DeadlineExceededError, OperationCanceledError

# Longest single Event.wait; larger waits are split.
_MAX_WAIT = 3600.0


class OperationContext:
    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        _deadline: Optional[float] = None,
    ) -> None:
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: "weakref.WeakSet[OperationContext]" = weakref.WeakSet()

        deadline = _deadline
        if timeout is not None:
            if timeout < 0:
                raise ValueError("timeout must be >= 0")
            own = clock() + timeout
            deadline = own if deadline is None else min(deadline, own)
        self._deadline = deadline

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), or None if unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    def child(self, timeout: Optional[float] = None) -> "OperationContext":
        """Derived context; inherits cancellation and the tighter deadline."""
        ctx = OperationContext(timeout, clock=self._clock, _deadline=self._deadline)
        with self._lock:
            self._children.add(ctx)
        if self.cancelled:
            ctx.cancel()
        return ctx

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if woken by cancellation."""
        if not seconds > 0:
            seconds = 0.0
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds <= _MAX_WAIT:
            return self._event.wait(seconds)
        # Event.wait overflows on very large timeouts; wait in bounded steps.
        end = time.monotonic() + seconds
        while True:
            left = end - time.monotonic()
            if left <= 0:
                return self.cancelled
            if self._event.wait(min(left, _MAX_WAIT)):
                return True

    def check(self, *, endpoint: Optional[str] = None, last_status=None) -> None:
        if self.cancelled:
            raise OperationCanceledError(endpoint=endpoint, last_status=last_status)
        if self.expired:
            raise DeadlineExceededError(endpoint=endpoint, last_status=last_status)
