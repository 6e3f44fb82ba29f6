from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:
    from .locks import LockKey, LockToken
    from .results import HttpResponse


class ResourceOpsError(Exception):
    """Base class for every error raised by resource_ops."""


class LockMisuseError(ResourceOpsError):
    def __init__(self, key: "LockKey", token: "LockToken", reason: str) -> None:
        self.key = key
        self.token = token
        super().__init__(f"lock misuse on {key}: {reason}")


class UnrecognizedOperationError(ResourceOpsError):
    def __init__(self, response: "HttpResponse") -> None:
        self.response = response
        super().__init__(
            f"{response.method} {response.url} returned {response.status_code} "
            "without a pollable long-running operation signal"
        )


class TransientTransportError(ResourceOpsError):
    """Network failure, 5xx or 429 while talking to an endpoint."""

    def __init__(
        self,
        endpoint: str,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        attempts: int = 0,
    ) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        self.retry_after = retry_after
        self.attempts = attempts
        self.detail = message or (f"status {status_code}" if status_code is not None else "transport error")
        detail = self.detail
        if attempts:
            detail = f"{detail} (gave up after {attempts} attempts)"
        super().__init__(f"{endpoint}: {detail}")


class OperationFailedError(ResourceOpsError):
    """The server reported a terminal failure; `payload` is its body verbatim."""

    def __init__(self, endpoint: str, status: Any, payload: Any, status_code: Optional[int] = None) -> None:
        self.endpoint = endpoint
        self.status = status
        self.payload = payload
        self.status_code = status_code
        super().__init__(server_error_message(payload) or f"operation at {endpoint} ended in {status}")


class OperationInterruptedError(ResourceOpsError):
    """The caller gave up before the operation reached a terminal state."""

    def __init__(self, message: str, *, endpoint: Optional[str] = None, last_status: Any = None) -> None:
        self.endpoint = endpoint
        self.last_status = last_status
        super().__init__(message)


class OperationCanceledError(OperationInterruptedError):
    def __init__(self, *, endpoint: Optional[str] = None, last_status: Any = None) -> None:
        super().__init__("operation was canceled", endpoint=endpoint, last_status=last_status)


class DeadlineExceededError(OperationInterruptedError):
    def __init__(self, *, endpoint: Optional[str] = None, last_status: Any = None) -> None:
        super().__init__(
            "operation did not complete within the configured timeout",
            endpoint=endpoint,
            last_status=last_status,
        )


class UnexpectedStatusError(ResourceOpsError):
    def __init__(self, response: "HttpResponse", expected: Sequence[int]) -> None:
        self.response = response
        self.expected = tuple(expected)
        self.payload = response.body
        message = server_error_message(response.body) or response.text
        super().__init__(
            f"{response.method} {response.url}: unexpected status {response.status_code} "
            f"(expected {', '.join(str(c) for c in self.expected)}): {message}"
        )


def server_error_message(payload: Any) -> Optional[str]:
    # Resource Manager nests the message under "error"; operation bodies sometimes
    # put it under properties.error instead.
    if not isinstance(payload, dict):
        return None
    for candidate in (payload.get("error"), (payload.get("properties") or {}).get("error")):
        if isinstance(candidate, dict) and candidate.get("message"):
            code = candidate.get("code")
            return f"{code}: {candidate['message']}" if code else str(candidate["message"])
    if payload.get("message"):
        return str(payload["message"])
    return None
