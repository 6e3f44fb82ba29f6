from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

import redis

from .config import ReadBudgetConfig, RedisConfig
from .throttle import BudgetResult

log = logging.getLogger(__name__)

_SCRIPT = Path(__file__).with_name("lua") / "read_budget.lua"


class RedisReadBudget:
    """Read budget shared by every process pointed at the same Redis.

    Same semantics as ReadBudget: one bucket per endpoint host, and a 429
    reported through hold_off() closes the host for every process at once.
    When Redis is unreachable, checks are allowed (fail_open) or refused
    (fail_closed) according to RedisConfig; a lost hold_off is only logged.
    """

    def __init__(
        self,
        config: ReadBudgetConfig,
        redis_config: RedisConfig,
        client: redis.Redis | None = None,
    ) -> None:
        if config.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if config.refill_rate < 0:
            raise ValueError("refill_rate must be >= 0")

        self._cfg = config
        self._redis_cfg = redis_config
        self._redis = client or redis.Redis.from_url(
            redis_config.redis_url(),
            decode_responses=True,
            socket_connect_timeout=redis_config.socket_connect_timeout_s,
            socket_timeout=redis_config.socket_timeout_s,
            retry_on_timeout=True,
        )
        self._source = _SCRIPT.read_text(encoding="utf-8")
        self._sha: Optional[str] = None

    def _run(self, mode: str, key: str, amount: int) -> list[Any]:
        keys_and_args = [
            f"{self._redis_cfg.key_prefix}{key}",
            mode,
            int(time.time() * 1000),
            self._cfg.capacity,
            self._cfg.refill_rate / 1000.0,
            amount,
        ]
        if self._sha is None:
            self._sha = self._redis.script_load(self._source)
        try:
            return self._redis.evalsha(self._sha, 1, *keys_and_args)
        except redis.exceptions.NoScriptError:
            # Script cache was flushed (restart, SCRIPT FLUSH, failover).
            reply = self._redis.eval(self._source, 1, *keys_and_args)
            self._sha = self._redis.script_load(self._source)
            return reply

    def check(self, key: str, tokens: int = 1) -> BudgetResult:
        if tokens <= 0:
            raise ValueError("tokens must be > 0")

        try:
            allowed, reads, wait_ms = self._run("check", key, tokens)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            fail_open = self._redis_cfg.fail_open
            mode = "fail_open" if fail_open else "fail_closed"
            log.warning("read budget for %s unavailable (%s): %s", key, mode, exc)
            return BudgetResult(
                allowed=fail_open,
                remaining=float("inf") if fail_open else 0.0,
                retry_after_ms=0,
                metadata={"backend": "redis", "mode": mode, "error": str(exc)},
            )

        return BudgetResult(
            allowed=bool(int(allowed)),
            remaining=float(reads),
            retry_after_ms=int(wait_ms),
            metadata={"backend": "redis"},
        )

    def hold_off(self, key: str, seconds: Optional[float]) -> None:
        hold_ms = int(seconds * 1000) if seconds else 0
        try:
            self._run("hold", key, hold_ms)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            log.warning("could not record server throttling of %s: %s", key, exc)
