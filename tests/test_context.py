from __future__ import annotations

import threading
import time

import pytest

from resource_ops import DeadlineExceededError, OperationCanceledError, OperationContext, Timeouts


def test_unbounded_context_has_no_deadline() -> None:
    ctx = OperationContext()
    assert ctx.remaining() is None
    assert not ctx.expired
    ctx.check()


def test_cancel_wakes_a_pending_wait() -> None:
    ctx = OperationContext()
    threading.Timer(0.05, ctx.cancel).start()
    start = time.monotonic()
    assert ctx.wait(10.0) is True
    assert time.monotonic() - start < 2.0
    with pytest.raises(OperationCanceledError):
        ctx.check()


def test_huge_wait_without_deadline_is_still_cancellable() -> None:
    ctx = OperationContext()
    threading.Timer(0.05, ctx.cancel).start()
    start = time.monotonic()
    assert ctx.wait(float("inf")) is True
    assert time.monotonic() - start < 2.0


def test_nan_wait_returns_immediately() -> None:
    ctx = OperationContext()
    assert ctx.wait(float("nan")) is False


def test_wait_is_capped_by_the_deadline() -> None:
    ctx = OperationContext(timeout=0.05)
    start = time.monotonic()
    assert ctx.wait(10.0) is False
    assert time.monotonic() - start < 2.0
    with pytest.raises(DeadlineExceededError) as exc:
        ctx.check(endpoint="https://example.test/op")
    assert exc.value.endpoint == "https://example.test/op"
    assert "did not complete within the configured timeout" in str(exc.value)


def test_child_takes_the_earlier_deadline() -> None:
    parent = OperationContext(timeout=100.0)
    assert parent.child(5.0).remaining() <= 5.0
    assert parent.child(500.0).deadline == parent.deadline
    assert parent.child().deadline == parent.deadline


def test_cancellation_flows_down_not_up() -> None:
    parent = OperationContext()
    child = parent.child()
    grandchild = child.child()

    child.cancel()
    assert grandchild.cancelled
    assert not parent.cancelled

    other = parent.child()
    parent.cancel()
    assert other.cancelled
    assert parent.child().cancelled


def test_negative_timeout_is_rejected() -> None:
    with pytest.raises(ValueError):
        OperationContext(timeout=-1)


def test_timeouts_derive_per_operation_deadlines() -> None:
    stop = OperationContext()
    timeouts = Timeouts()
    assert timeouts.create == 30 * 60
    assert timeouts.read == 5 * 60
    assert timeouts.for_read(stop).remaining() <= 5 * 60
    assert timeouts.for_delete(stop).remaining() > 5 * 60

    stop.cancel()
    assert timeouts.for_update(stop).cancelled
