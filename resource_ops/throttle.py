"""Read budget for status checks.

Resource Manager meters reads per subscription, and every status check
spends one. Pollers that share a ReadBudget draw from one bucket per
endpoint host, so a burst of concurrent handlers slows itself down instead
of running into 429s. When the server answers 429 anyway, hold_off() empties
the host's bucket and closes it until the server's Retry-After has passed,
so every poller sharing the budget backs off together rather than each one
discovering the throttle on its own.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from .config import ReadBudgetConfig


@dataclass(frozen=True)
class BudgetResult:
    allowed: bool
    remaining: float
    retry_after_ms: int
    metadata: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "retry_after_ms": self.retry_after_ms,
            "metadata": dict(self.metadata),
        }


class Throttle(Protocol):
    def check(self, key: str, tokens: int = 1) -> BudgetResult:
        ...

    def hold_off(self, key: str, seconds: Optional[float]) -> None:
        ...


@dataclass
class _HostBudget:
    reads: float
    updated: float
    closed_until: float = 0.0


class ReadBudget:
    """In-process read budget keyed by endpoint host."""

    def __init__(self, config: ReadBudgetConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        if config.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if config.refill_rate < 0:
            raise ValueError("refill_rate must be >= 0")

        self._cfg = config
        self._clock = clock
        # Hosts are few; one lock for all of them.
        self._guard = threading.Lock()
        self._hosts: dict[str, _HostBudget] = {}

    def _host(self, key: str, now: float) -> _HostBudget:
        host = self._hosts.get(key)
        if host is None:
            host = _HostBudget(reads=float(self._cfg.capacity), updated=now)
            self._hosts[key] = host
        elif now > host.updated:
            earned = (now - host.updated) * self._cfg.refill_rate
            host.reads = min(float(self._cfg.capacity), host.reads + earned)
            host.updated = now
        return host

    def check(self, key: str, tokens: int = 1) -> BudgetResult:
        """Spend `tokens` reads for `key` if the budget allows it."""
        if tokens <= 0:
            raise ValueError("tokens must be > 0")

        with self._guard:
            now = self._clock()
            host = self._host(key, now)
            if now < host.closed_until:
                wait_ms = int(math.ceil((host.closed_until - now) * 1000.0))
                return BudgetResult(False, host.reads, wait_ms, {"backend": "memory", "reason": "server_throttled"})
            if host.reads >= tokens:
                host.reads -= tokens
                return BudgetResult(True, host.reads, 0, {"backend": "memory"})
            wait_ms = 0
            if self._cfg.refill_rate > 0:
                wait_ms = int(math.ceil((tokens - host.reads) / self._cfg.refill_rate * 1000.0))
            return BudgetResult(False, host.reads, wait_ms, {"backend": "memory", "reason": "exhausted"})

    def hold_off(self, key: str, seconds: Optional[float]) -> None:
        """The server throttled `key`: spend what is left and close until `seconds` from now."""
        with self._guard:
            now = self._clock()
            host = self._host(key, now)
            host.reads = 0.0
            if seconds:
                host.closed_until = max(host.closed_until, now + seconds)
