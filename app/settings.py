from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ARMOPS_", case_sensitive=False)

    # Long-running operation behavior
    # How a mutation reports its operation unless ?style= overrides it.
    default_style: Literal["async", "location", "provisioning", "sync"] = "async"
    # Status checks an operation answers "in progress" before it completes.
    polls_to_complete: int = 2
    # Advertised on 202s; 0 omits the header.
    retry_after_seconds: int = 1

    # Read budget for status endpoints (429 when exhausted); capacity 0 disables it.
    read_budget_capacity: int = 0
    read_budget_refill_per_sec: float = 5.0
    read_budget_backend: Literal["memory", "redis"] = "memory"

    redis_url: str = "redis://redis:6379/0"
    key_prefix: str = "armops:budget:"
    # When Redis is unavailable: "fail_open" allows reads; "fail_closed" throttles.
    failure_mode: str = "fail_open"

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"


settings = Settings()
