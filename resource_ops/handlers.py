"""Create/read/delete handlers on top of the lock registry and the poller.

Every mutating handler follows the same pattern:

    derive the operation deadline from the caller's context
    hold the named locks for the parents it touches (global order)
    send the request, check the status code
    poll the resulting operation until it is terminal
    release the locks (always, via the context manager)
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence
from urllib.parse import urlencode

from .config import Timeouts
from .context import OperationContext
from .errors import UnexpectedStatusError
from .locks import KeyLike, LockRegistry
from .pollers import Poller
from .results import TerminalResult
from .transport import Transport

log = logging.getLogger(__name__)

VIRTUAL_NETWORK_RESOURCE_NAME = "azurerm_virtual_network"
SUBNET_RESOURCE_NAME = "azurerm_subnet"


class ResourceClient:
    def __init__(
        self,
        transport: Transport,
        locks: LockRegistry,
        *,
        poller: Optional[Poller] = None,
        timeouts: Optional[Timeouts] = None,
        api_version: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._locks = locks
        self._poller = poller or Poller(transport)
        self._timeouts = timeouts or Timeouts()
        self._api_version = api_version

    def _url(self, resource_id: str) -> str:
        if not self._api_version:
            return resource_id
        sep = "&" if "?" in resource_id else "?"
        return f"{resource_id}{sep}{urlencode({'api-version': self._api_version})}"

    def create_or_update(
        self,
        resource_id: str,
        body: Any,
        ctx: OperationContext,
        *,
        lock_on: Sequence[KeyLike] = (),
        update: bool = False,
    ) -> TerminalResult:
        op_ctx = self._timeouts.for_update(ctx) if update else self._timeouts.for_create(ctx)
        with self._locks.hold_many(*lock_on, ctx=op_ctx):
            handle = self._poller.begin(
                "PUT", self._url(resource_id), op_ctx, json=body, expected=(200, 201, 202)
            )
            result = self._poller.poll_until_done(handle, op_ctx)
        log.info("%s %s: %s", "updated" if update else "created", resource_id, result.status.value)
        return result

    def get(self, resource_id: str, ctx: OperationContext) -> Optional[Any]:
        """The resource body, or None if it does not exist."""
        op_ctx = self._timeouts.for_read(ctx)
        op_ctx.check(endpoint=resource_id)
        response = self._transport.send("GET", self._url(resource_id), timeout=op_ctx.remaining())
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UnexpectedStatusError(response, (200,))
        return response.body

    def delete(
        self,
        resource_id: str,
        ctx: OperationContext,
        *,
        lock_on: Sequence[KeyLike] = (),
    ) -> Optional[TerminalResult]:
        """Delete and wait. Returns None if the resource was already gone."""
        op_ctx = self._timeouts.for_delete(ctx)
        with self._locks.hold_many(*lock_on, ctx=op_ctx):
            try:
                handle = self._poller.begin(
                    "DELETE", self._url(resource_id), op_ctx, expected=(200, 202, 204)
                )
            except UnexpectedStatusError as exc:
                if exc.response.status_code == 404:
                    log.info("%s already deleted", resource_id)
                    return None
                raise
            result = self._poller.poll_until_done(handle, op_ctx)
        log.info("deleted %s", resource_id)
        return result
