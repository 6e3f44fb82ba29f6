"""Long-running operation polling.

A mutating request against Resource Manager often returns before the work
is done. The response says how to follow up, in one of a few ways:

  - an Azure-AsyncOperation header: poll that URL, read "status" from the body
  - a Location header on a 202: poll that URL until it stops answering 202
  - a provisioningState in the body: GET the resource until it is terminal
  - none of the above on a 200/201/204: the operation already finished

start_from() runs the detection strategies in that order and returns an
OperationHandle carrying the first signal that matched. Poller.poll_until_done()
then checks status with capped exponential backoff until the operation is
terminal, the caller cancels, or the deadline passes.

Usage:
    poller = Poller(RequestsTransport(base_url=...), PollPolicy(initial_interval=2))
    handle = poller.begin("PUT", url, ctx, json=body)
    result = poller.poll_until_done(handle, ctx)
"""
from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Sequence, Union
from urllib.parse import urlsplit

from .config import PollPolicy
from .context import OperationContext
from .errors import (
    OperationFailedError,
    TransientTransportError,
    UnexpectedStatusError,
    UnrecognizedOperationError,
    server_error_message,
)
from .results import HttpResponse, OperationStatus, TerminalResult, parse_retry_after
from .throttle import Throttle
from .transport import Transport

log = logging.getLogger(__name__)

ASYNC_OPERATION_HEADER = "Azure-AsyncOperation"
LOCATION_HEADER = "Location"

_SUCCESS_CODES = (200, 201, 204)
# Status strings an operation body may report at its top level.
_OPERATION_STATES = {"notstarted", "accepted", "running", "inprogress", "succeeded", "failed", "canceled", "cancelled"}
# Granularity for waiting on a handle another thread is polling.
_HANDLE_WAIT_SLICE = 0.05
# Wait used when the read budget is exhausted and cannot say for how long.
_MIN_BUDGET_WAIT = 1.0


@dataclass(frozen=True)
class ByHeader:
    header: str
    url: str
    final_url: Optional[str] = None


@dataclass(frozen=True)
class ByBody:
    url: str
    status: OperationStatus


@dataclass(frozen=True)
class SynchronousComplete:
    status_code: int


Signal = Union[ByHeader, ByBody, SynchronousComplete]
Strategy = Callable[[HttpResponse], Optional[Signal]]


def body_status(body: Any) -> Optional[str]:
    """Raw status string embedded in a resource or operation body, if any."""
    if not isinstance(body, dict):
        return None
    props = body.get("properties")
    if isinstance(props, dict) and props.get("provisioningState"):
        return str(props["provisioningState"])
    if body.get("provisioningState"):
        return str(body["provisioningState"])
    status = body.get("status")
    if isinstance(status, str) and status.lower() in _OPERATION_STATES:
        return status
    return None


def detect_async_operation_header(response: HttpResponse) -> Optional[Signal]:
    if response.status_code not in (200, 201, 202, 204):
        return None
    url = response.header(ASYNC_OPERATION_HEADER)
    if not url:
        return None
    final_url = response.header(LOCATION_HEADER)
    if final_url is None and response.method in ("PUT", "PATCH"):
        final_url = response.url
    return ByHeader(ASYNC_OPERATION_HEADER, url, final_url)


def detect_location_header(response: HttpResponse) -> Optional[Signal]:
    if response.status_code != 202:
        return None
    url = response.header(LOCATION_HEADER)
    if not url:
        return None
    return ByHeader(LOCATION_HEADER, url)


def detect_provisioning_state(response: HttpResponse) -> Optional[Signal]:
    if response.status_code not in (200, 201):
        return None
    raw = body_status(response.body)
    if raw is None:
        return None
    return ByBody(response.url, OperationStatus.parse(raw))


def detect_synchronous_completion(response: HttpResponse) -> Optional[Signal]:
    if response.status_code in _SUCCESS_CODES:
        return SynchronousComplete(response.status_code)
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    detect_async_operation_header,
    detect_location_header,
    detect_provisioning_state,
    detect_synchronous_completion,
)


class OperationHandle:
    """One in-flight long-running operation.

    Holds the signal detected on the initiating response, the last status
    observed, and once terminal, the cached result or failure. Status checks
    always use GET.
    """

    poll_method = "GET"

    def __init__(
        self,
        signal: Signal,
        initial: Optional[HttpResponse],
        *,
        method: str,
        status: OperationStatus = OperationStatus.IN_PROGRESS,
    ) -> None:
        self.signal = signal
        self.initial = initial
        self.method = method.upper()
        self.status = status
        self.status_checks = 0
        self.last_response = initial
        self._result: Optional[TerminalResult] = None
        self._error: Optional[OperationFailedError] = None
        self._lock = threading.Lock()

    @property
    def poll_url(self) -> Optional[str]:
        if isinstance(self.signal, SynchronousComplete):
            return None
        return self.signal.url

    @property
    def done(self) -> bool:
        return self._result is not None or self._error is not None

    def result(self) -> TerminalResult:
        """The terminal result; raises the cached failure if the operation failed."""
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise RuntimeError("operation is still in progress")
        return self._result

    def _succeed(self, resource: Any, response: Optional[HttpResponse]) -> TerminalResult:
        self.status = OperationStatus.SUCCEEDED
        self._result = TerminalResult(OperationStatus.SUCCEEDED, resource, response, self.status_checks)
        return self._result

    def _fail(self, status: OperationStatus, response: HttpResponse) -> OperationFailedError:
        self.status = status
        self._error = OperationFailedError(
            self.poll_url or response.url, status, response.body, response.status_code
        )
        return self._error

    def continuation_token(self) -> str:
        """Opaque token that lets another process resume polling this operation."""
        payload = {
            "kind": type(self.signal).__name__,
            "signal": asdict(self.signal),
            "method": self.method,
            "status": self.status.value,
        }
        return base64.urlsafe_b64encode(json.dumps(payload, sort_keys=True).encode("utf-8")).decode("ascii")

    @classmethod
    def from_continuation_token(cls, token: str) -> "OperationHandle":
        try:
            payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
            kind = payload["kind"]
            fields = payload["signal"]
            if kind == "ByHeader":
                signal: Signal = ByHeader(**fields)
            elif kind == "ByBody":
                signal = ByBody(fields["url"], OperationStatus(fields["status"]))
            elif kind == "SynchronousComplete":
                signal = SynchronousComplete(**fields)
            else:
                raise ValueError(f"unknown signal kind {kind!r}")
            status = OperationStatus(payload["status"])
            method = payload["method"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid continuation token: {exc}") from exc

        if status.terminal:
            # Terminal outcomes are not carried in the token; check once more.
            status = OperationStatus.IN_PROGRESS
        if isinstance(signal, SynchronousComplete):
            handle = cls(signal, None, method=method, status=OperationStatus.SUCCEEDED)
            handle._succeed(None, None)
            return handle
        return cls(signal, None, method=method, status=status)

    def __repr__(self) -> str:
        return (
            f"OperationHandle({type(self.signal).__name__}, url={self.poll_url!r}, "
            f"status={self.status.value}, checks={self.status_checks})"
        )


def start_from(response: HttpResponse, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES) -> OperationHandle:
    """Build a handle from the response that started an operation."""
    for strategy in strategies:
        signal = strategy(response)
        if signal is not None:
            break
    else:
        raise UnrecognizedOperationError(response)

    log.debug("%s %s -> %s", response.method, response.url, signal)
    if isinstance(signal, SynchronousComplete):
        handle = OperationHandle(signal, response, method=response.method)
        handle._succeed(response.body, response)
        return handle

    if isinstance(signal, ByBody) and signal.status.terminal:
        handle = OperationHandle(signal, response, method=response.method)
        if signal.status is OperationStatus.SUCCEEDED:
            handle._succeed(response.body, response)
        else:
            handle._fail(signal.status, response)
        return handle

    return OperationHandle(signal, response, method=response.method)


class Poller:
    """Drives OperationHandles to a terminal state.

    Safe to share between threads: it keeps no per-operation state, and each
    handle serializes its own polling.

    Args:
        transport: issues the status-check requests.
        policy: default backoff schedule; poll_until_done can override it.
        throttle: optional read budget consulted before every request.
        strategies: signal detection order used by start_from/begin.
    """

    def __init__(
        self,
        transport: Transport,
        policy: Optional[PollPolicy] = None,
        *,
        throttle: Optional[Throttle] = None,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self._transport = transport
        self._policy = policy or PollPolicy()
        self._throttle = throttle
        self._strategies = tuple(strategies)

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    def start_from(self, response: HttpResponse) -> OperationHandle:
        return start_from(response, self._strategies)

    def begin(
        self,
        method: str,
        url: str,
        ctx: OperationContext,
        *,
        json: Any = None,
        expected: Sequence[int] = (200, 201, 202, 204),
    ) -> OperationHandle:
        """Send the mutating request and return a handle for its operation."""
        ctx.check(endpoint=url)
        response = self._transport.send(
            method, url, json=json, timeout=_request_timeout(ctx, self._policy)
        )
        if response.status_code not in expected:
            raise UnexpectedStatusError(response, expected)
        return self.start_from(response)

    def poll_until_done(
        self,
        handle: OperationHandle,
        ctx: OperationContext,
        policy: Optional[PollPolicy] = None,
    ) -> TerminalResult:
        if handle.done:
            return handle.result()

        policy = policy or self._policy
        if policy.max_duration is not None:
            ctx = ctx.child(policy.max_duration)

        while not handle._lock.acquire(timeout=_HANDLE_WAIT_SLICE):
            ctx.check(endpoint=handle.poll_url, last_status=handle.status)
        try:
            if handle.done:
                return handle.result()
            return self._poll(handle, ctx, policy)
        finally:
            handle._lock.release()

    def _poll(self, handle: OperationHandle, ctx: OperationContext, policy: PollPolicy) -> TerminalResult:
        url = handle.poll_url
        if url is None:
            # Nothing to poll; the initiating response is the outcome.
            initial = handle.initial
            return handle._succeed(initial.body if initial is not None else None, initial)
        ctx.check(endpoint=url, last_status=handle.status)

        interval = policy.initial_interval
        delay = interval
        if handle.initial is not None:
            hinted = parse_retry_after(handle.initial)
            if hinted is not None:
                delay = hinted

        failures = 0
        while True:
            self._pause(handle, ctx, delay)
            try:
                response = self._get(handle, url, ctx, policy)
            except TransientTransportError as exc:
                failures += 1
                interval, delay = _retry_delay(exc, failures, interval, policy)
                continue
            failures = 0

            status = self._observe(handle, response)
            if status.terminal:
                return self._finish(handle, response, ctx, policy)
            interval = policy.next_interval(interval)
            delay = interval

    def _pause(self, handle: OperationHandle, ctx: OperationContext, seconds: float) -> None:
        ctx.check(endpoint=handle.poll_url, last_status=handle.status)
        if seconds > 0:
            ctx.wait(seconds)
        ctx.check(endpoint=handle.poll_url, last_status=handle.status)

    def _await_budget(self, handle: OperationHandle, ctx: OperationContext, url: str) -> None:
        if self._throttle is None:
            return
        key = _budget_key(url)
        while True:
            budget = self._throttle.check(key)
            if budget.allowed:
                return
            wait = budget.retry_after_ms / 1000.0 if budget.retry_after_ms > 0 else _MIN_BUDGET_WAIT
            log.debug("read budget for %s exhausted; waiting %.2fs", key, wait)
            self._pause(handle, ctx, wait)

    def _get(self, handle: OperationHandle, url: str, ctx: OperationContext, policy: PollPolicy) -> HttpResponse:
        self._await_budget(handle, ctx, url)
        response = self._transport.send(handle.poll_method, url, timeout=_request_timeout(ctx, policy))
        if response.status_code == 429 or response.status_code >= 500:
            retry_after = parse_retry_after(response)
            if response.status_code == 429 and self._throttle is not None:
                # Everyone polling this host waits, not just this handle.
                self._throttle.hold_off(_budget_key(url), retry_after)
            raise TransientTransportError(
                url,
                server_error_message(response.body) or "",
                status_code=response.status_code,
                retry_after=retry_after,
            )
        return response

    def _observe(self, handle: OperationHandle, response: HttpResponse) -> OperationStatus:
        handle.status_checks += 1
        handle.last_response = response
        signal = handle.signal

        if response.status_code == 404 and handle.method == "DELETE" and isinstance(signal, ByBody):
            status = OperationStatus.SUCCEEDED
        elif response.status_code >= 400:
            raise handle._fail(OperationStatus.FAILED, response)
        elif isinstance(signal, ByHeader) and signal.header == ASYNC_OPERATION_HEADER:
            status = OperationStatus.parse(body_status(response.body))
        elif isinstance(signal, ByHeader):
            if response.status_code == 202:
                status = OperationStatus.IN_PROGRESS
            else:
                raw = body_status(response.body)
                status = OperationStatus.SUCCEEDED if raw is None else OperationStatus.parse(raw)
        else:
            raw = body_status(response.body)
            status = OperationStatus.SUCCEEDED if raw is None else OperationStatus.parse(raw)

        handle.status = status
        log.debug("status check %d on %s: %s", handle.status_checks, handle.poll_url, status.value)
        return status

    def _finish(
        self,
        handle: OperationHandle,
        response: HttpResponse,
        ctx: OperationContext,
        policy: PollPolicy,
    ) -> TerminalResult:
        if handle.status is not OperationStatus.SUCCEEDED:
            error = handle._fail(handle.status, response)
            log.info("operation at %s ended in %s: %s", handle.poll_url, handle.status.value, error)
            raise error

        final = response
        resource = response.body
        signal = handle.signal
        if isinstance(signal, ByHeader) and signal.final_url:
            final = self._final_get(handle, signal.final_url, ctx, policy)
            resource = final.body
        elif isinstance(signal, ByHeader) and signal.header == ASYNC_OPERATION_HEADER:
            # The body is the operation's status document, not a resource.
            resource = None
        if final.status_code == 404:
            resource = None
        log.info("operation at %s succeeded after %d status checks", handle.poll_url, handle.status_checks)
        return handle._succeed(resource, final)

    def _final_get(
        self,
        handle: OperationHandle,
        url: str,
        ctx: OperationContext,
        policy: PollPolicy,
    ) -> HttpResponse:
        interval = policy.initial_interval
        failures = 0
        while True:
            try:
                response = self._get(handle, url, ctx, policy)
            except TransientTransportError as exc:
                failures += 1
                interval, delay = _retry_delay(exc, failures, interval, policy)
                self._pause(handle, ctx, delay)
                continue
            if response.status_code >= 400 and not (response.status_code == 404 and handle.method == "DELETE"):
                raise UnexpectedStatusError(response, (200,))
            return response


def _request_timeout(ctx: OperationContext, policy: PollPolicy) -> float:
    remaining = ctx.remaining()
    if remaining is None:
        return policy.request_timeout
    return max(0.001, min(policy.request_timeout, remaining))


def _retry_delay(
    exc: TransientTransportError,
    failures: int,
    interval: float,
    policy: PollPolicy,
) -> tuple[float, float]:
    """(next backoff interval, delay before this retry). Raises once retries run out."""
    if failures > policy.max_retries:
        log.warning("giving up on %s after %d transient failures: %s", exc.endpoint, failures, exc)
        raise TransientTransportError(
            exc.endpoint,
            exc.detail,
            status_code=exc.status_code,
            retry_after=exc.retry_after,
            attempts=failures,
        ) from exc

    interval = policy.next_interval(interval)
    delay = interval
    if exc.status_code == 429 and exc.retry_after is not None:
        delay = exc.retry_after
    log.warning("transient failure %d on %s (%s); retrying in %.2fs", failures, exc.endpoint, exc, delay)
    return interval, delay


def _budget_key(url: str) -> str:
    return urlsplit(url).netloc or url
