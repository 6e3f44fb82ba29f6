from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping, Optional


class OperationStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"

    @property
    def terminal(self) -> bool:
        return self is not OperationStatus.IN_PROGRESS

    @classmethod
    def parse(cls, raw: Any) -> "OperationStatus":
        value = str(raw or "").strip().lower()
        if value == "succeeded":
            return cls.SUCCEEDED
        if value == "failed":
            return cls.FAILED
        if value in ("canceled", "cancelled"):
            return cls.CANCELED
        # Accepted, Creating, Updating, Deleting, Running, ...
        return cls.IN_PROGRESS


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""
    method: str = "GET"
    url: str = ""

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class TerminalResult:
    status: OperationStatus
    resource: Any
    response: Optional[HttpResponse]
    status_checks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "resource": self.resource,
            "status_code": self.response.status_code if self.response is not None else None,
            "status_checks": self.status_checks,
        }


def parse_retry_after(response: HttpResponse) -> Optional[float]:
    """Seconds the server asked us to wait, or None.

    Values that are not finite numbers (inf, nan) are ignored.
    """
    for name in ("retry-after-ms", "x-ms-retry-after-ms"):
        seconds = _seconds(response.header(name), scale=1000.0)
        if seconds is not None:
            return seconds

    raw = response.header("Retry-After")
    if not raw:
        return None
    raw = raw.strip()
    seconds = _seconds(raw)
    if seconds is not None:
        return seconds
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _seconds(raw: Optional[str], scale: float = 1.0) -> Optional[float]:
    if not raw:
        return None
    try:
        value = float(raw) / scale
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return max(0.0, value)


def retry_after_header_value(retry_after_ms: int) -> Optional[str]:
    if retry_after_ms <= 0:
        return None
    # HTTP Retry-After supports seconds; round up.
    seconds = (retry_after_ms + 999) // 1000
    return str(max(1, seconds))
