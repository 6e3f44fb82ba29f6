"""Shared fakes for the resource_ops tests.

FakeTransport answers requests from per-(method, url) scripts and records
every call. RecordingContext never sleeps; it records the delays the poller
asked for, which lets the backoff tests run instantly.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Union

import pytest

from resource_ops import HttpResponse, LockRegistry, OperationContext

Scripted = Union[HttpResponse, Exception]

BASE = "https://management.example.test"


def response(
    status_code: int,
    body: Any = None,
    headers: Optional[dict[str, str]] = None,
    *,
    method: str = "GET",
    url: str = "",
) -> HttpResponse:
    return HttpResponse(
        status_code=status_code,
        headers=headers or {},
        body=body,
        text="" if body is None else str(body),
        method=method,
        url=url,
    )


class FakeTransport:
    def __init__(self, on_send: Optional[Callable[[str, str], None]] = None) -> None:
        self._scripts: dict[tuple[str, str], list[Scripted]] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.bodies: list[Any] = []
        self.on_send = on_send

    def script(self, method: str, url: str, *answers: Scripted) -> "FakeTransport":
        self._scripts.setdefault((method.upper(), url), []).extend(answers)
        return self

    def calls_to(self, url: str) -> int:
        return sum(1 for _, u in self.calls if u == url)

    def send(self, method, url, *, json=None, headers=None, timeout=None) -> HttpResponse:
        method = method.upper()
        with self._lock:
            self.calls.append((method, url))
            self.bodies.append(json)
            script = self._scripts.get((method, url))
            if not script:
                raise AssertionError(f"unexpected request {method} {url}")
            # The last answer repeats forever.
            answer = script.pop(0) if len(script) > 1 else script[0]
        if self.on_send is not None:
            self.on_send(method, url)
        if isinstance(answer, Exception):
            raise answer
        return HttpResponse(
            status_code=answer.status_code,
            headers=answer.headers,
            body=answer.body,
            text=answer.text,
            method=method,
            url=url,
        )


class RecordingContext(OperationContext):
    """Context whose waits return immediately and are recorded.

    cancel_after: cancel the context once this many waits were recorded.
    """

    def __init__(self, timeout: Optional[float] = None, *, cancel_after: Optional[int] = None) -> None:
        super().__init__(timeout)
        self.waits: list[float] = []
        self._cancel_after = cancel_after

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        if self._cancel_after is not None and len(self.waits) >= self._cancel_after:
            self.cancel()
        return self.cancelled


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def registry() -> LockRegistry:
    return LockRegistry(strict=True)


@pytest.fixture()
def ctx() -> RecordingContext:
    return RecordingContext()
