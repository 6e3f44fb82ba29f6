"""Named locks: mutual exclusion keyed by (resource type, resource name).

Handlers that touch a shared parent object (two subnets attached to the
same virtual network, say) take the parent's lock so their mutations
serialize. Locks under different keys never contend.

Ordering: a handler that needs several locks at once must take them in the
global LockKey order (resource type, then resource name). hold_many() does
that for you; taking them by hand in any other order can deadlock against a
handler that locks the same pair the other way round. The registry does not
enforce this.

Locks are process-local. Another process mutating the same resource is not
excluded.
"""
from __future__ import annotations

import itertools
import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple, Union

from .context import OperationContext
from .errors import LockMisuseError

log = logging.getLogger(__name__)

# Granularity of a context-aware lock wait; bounds how late cancellation is noticed.
_WAIT_SLICE = 0.05


@dataclass(frozen=True, order=True)
class LockKey:
    resource_type: str
    resource_name: str

    def __str__(self) -> str:
        return f"{self.resource_type}/{self.resource_name}"


@dataclass(frozen=True)
class LockToken:
    key: LockKey
    serial: int


class _Entry:
    __slots__ = ("mutex", "refs", "holder")

    def __init__(self) -> None:
        self.mutex = threading.Lock()
        self.refs = 0  # holders + waiters
        self.holder: Optional[int] = None


KeyLike = Union[LockKey, Tuple[str, str]]


class LockRegistry:
    """Reference-counted map of LockKey -> mutex.

    Entries are created on first acquire and dropped once nobody holds or
    waits on them. The map itself is guarded by its own lock, separate from
    the per-key mutexes.

    Args:
        strict: raise LockMisuseError on a release that doesn't match a live
            acquisition. Defaults to __debug__; when False the release is
            logged and ignored.
    """

    def __init__(self, strict: Optional[bool] = None) -> None:
        self._strict = __debug__ if strict is None else strict
        self._guard = threading.Lock()
        self._entries: dict[LockKey, _Entry] = {}
        self._serials = itertools.count(1)

    def acquire(
        self,
        resource_type: str,
        resource_name: str,
        ctx: Optional[OperationContext] = None,
    ) -> LockToken:
        """Block until the lock for (resource_type, resource_name) is ours.

        Without a context this waits indefinitely. With one, the wait gives up
        with OperationCanceledError or DeadlineExceededError.
        """
        key = LockKey(resource_type, resource_name)
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1

        try:
            self._wait_for(entry, key, ctx)
        except BaseException:
            with self._guard:
                self._unref(key, entry)
            raise

        with self._guard:
            token = LockToken(key, next(self._serials))
            entry.holder = token.serial
        log.debug("acquired lock %s (token %d)", key, token.serial)
        return token

    def _wait_for(self, entry: _Entry, key: LockKey, ctx: Optional[OperationContext]) -> None:
        if entry.mutex.acquire(blocking=False):
            return
        log.debug("waiting for lock %s", key)
        if ctx is None:
            entry.mutex.acquire()
            return
        while True:
            ctx.check(endpoint=str(key))
            remaining = ctx.remaining()
            timeout = _WAIT_SLICE if remaining is None else min(_WAIT_SLICE, remaining)
            if entry.mutex.acquire(timeout=timeout):
                return

    def release(self, token: LockToken) -> None:
        with self._guard:
            entry = self._entries.get(token.key)
            if entry is None or entry.holder != token.serial:
                reason = "release without a matching acquire"
                if self._strict:
                    raise LockMisuseError(token.key, token, reason)
                log.warning("ignoring %s on %s (token %d)", reason, token.key, token.serial)
                return
            entry.holder = None
            self._unref(token.key, entry)
            entry.mutex.release()
        log.debug("released lock %s (token %d)", token.key, token.serial)

    def _unref(self, key: LockKey, entry: _Entry) -> None:
        # Caller holds self._guard.
        entry.refs -= 1
        if entry.refs == 0 and self._entries.get(key) is entry:
            del self._entries[key]

    @contextmanager
    def hold(
        self,
        resource_type: str,
        resource_name: str,
        ctx: Optional[OperationContext] = None,
    ) -> Iterator[LockToken]:
        token = self.acquire(resource_type, resource_name, ctx)
        try:
            yield token
        finally:
            self.release(token)

    @contextmanager
    def hold_many(self, *keys: KeyLike, ctx: Optional[OperationContext] = None) -> Iterator[list[LockToken]]:
        """Hold several locks, taken in global order and released in reverse."""
        with ExitStack() as stack:
            tokens = [
                stack.enter_context(self.hold(key.resource_type, key.resource_name, ctx))
                for key in ordered(keys)
            ]
            yield tokens

    def is_locked(self, resource_type: str, resource_name: str) -> bool:
        with self._guard:
            entry = self._entries.get(LockKey(resource_type, resource_name))
            return entry is not None and entry.holder is not None

    def keys(self) -> list[LockKey]:
        with self._guard:
            return list(self._entries)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def _as_key(key: KeyLike) -> LockKey:
    if isinstance(key, LockKey):
        return key
    resource_type, resource_name = key
    return LockKey(resource_type, resource_name)


def ordered(keys: Iterable[KeyLike]) -> list[LockKey]:
    """Deduplicated keys in the order they must be acquired."""
    return sorted(set(_as_key(k) for k in keys))
