from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .context import OperationContext


@dataclass(frozen=True)
class PollPolicy:
    initial_interval: float = 5.0  # seconds
    multiplier: float = 2.0
    max_interval: float = 60.0
    # Caps the whole poll on top of the caller's deadline; it can only shorten it.
    max_duration: Optional[float] = None
    # Consecutive transient failures tolerated before giving up.
    max_retries: int = 10
    request_timeout: float = 60.0

    def __post_init__(self) -> None:
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        if self.max_duration is not None and self.max_duration <= 0:
            raise ValueError("max_duration must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")

    def next_interval(self, current: float) -> float:
        return min(self.max_interval, current * self.multiplier)


@dataclass(frozen=True)
class Timeouts:
    create: float = 30 * 60
    read: float = 5 * 60
    update: float = 30 * 60
    delete: float = 30 * 60

    def for_create(self, ctx: OperationContext) -> OperationContext:
        return ctx.child(self.create)

    def for_read(self, ctx: OperationContext) -> OperationContext:
        return ctx.child(self.read)

    def for_update(self, ctx: OperationContext) -> OperationContext:
        return ctx.child(self.update)

    def for_delete(self, ctx: OperationContext) -> OperationContext:
        return ctx.child(self.delete)


@dataclass(frozen=True)
class ReadBudgetConfig:
    capacity: int
    refill_rate: float  # tokens per second


@dataclass(frozen=True)
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    key_prefix: str = "armops:budget:"

    # When Redis is unavailable, let status checks through.
    fail_open: bool = True

    socket_connect_timeout_s: float = 1.0
    socket_timeout_s: float = 1.0

    def redis_url(self) -> str:
        return f"redis://{self.host}:{self.port}/{self.db}"
