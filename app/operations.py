from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

SUCCEEDED = "Succeeded"
FAILED = "Failed"
IN_PROGRESS = "InProgress"


@dataclass
class Operation:
    id: str
    kind: str  # "put" | "delete"
    resource_type: str
    name: str
    style: str
    polls_left: int
    fail: bool = False
    status: str = IN_PROGRESS
    error: Optional[dict[str, Any]] = None
    checks: int = 0

    @property
    def terminal(self) -> bool:
        return self.status != IN_PROGRESS

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"id": self.id, "name": self.id, "status": self.status}
        if self.error is not None:
            body["error"] = self.error
        return body


@dataclass
class _Resource:
    resource_type: str
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    state: str = SUCCEEDED
    pending: Optional[str] = None  # id of the operation still working on it

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": f"/resources/{self.resource_type}/{self.name}",
            "name": self.name,
            "type": self.resource_type,
            "properties": {**self.properties, "provisioningState": self.state},
        }


class OperationStore:
    """In-memory resources plus the operations mutating them.

    An operation answers "in progress" for `polls_to_complete` status checks
    and then completes. A request body with "simulateFailure": true makes it
    end in Failed with a Resource Manager style error payload.
    """

    def __init__(self, polls_to_complete: int = 2) -> None:
        if polls_to_complete < 0:
            raise ValueError("polls_to_complete must be >= 0")
        self._polls = polls_to_complete
        self._lock = threading.Lock()
        self._resources: dict[tuple[str, str], _Resource] = {}
        self._operations: dict[str, Operation] = {}

    def put(self, resource_type: str, name: str, body: dict[str, Any], style: str) -> tuple[Optional[Operation], dict[str, Any]]:
        fail = bool(body.get("simulateFailure"))
        properties = dict(body.get("properties") or {})
        with self._lock:
            key = (resource_type, name)
            resource = self._resources.get(key)
            if resource is None:
                resource = _Resource(resource_type, name)
                self._resources[key] = resource
            resource.properties = properties

            if style == "sync":
                resource.state = FAILED if fail else SUCCEEDED
                if fail:
                    resource.properties["error"] = _failure(resource_type, name)
                resource.pending = None
                return None, resource.to_dict()

            op = self._begin("put", resource, style, fail)
            resource.state = "Creating"
            return op, resource.to_dict()

    def delete(self, resource_type: str, name: str, style: str) -> tuple[bool, Optional[Operation], Optional[dict[str, Any]]]:
        """(found, operation, resource body while deleting)."""
        with self._lock:
            key = (resource_type, name)
            resource = self._resources.get(key)
            if resource is None:
                return False, None, None
            if style == "sync":
                del self._resources[key]
                return True, None, None
            op = self._begin("delete", resource, style, fail=False)
            resource.state = "Deleting"
            return True, op, resource.to_dict()

    def get_resource(self, resource_type: str, name: str) -> Optional[dict[str, Any]]:
        with self._lock:
            key = (resource_type, name)
            resource = self._resources.get(key)
            if resource is None:
                return None
            if resource.pending is not None:
                op = self._operations[resource.pending]
                if op.style == "provisioning":
                    self._advance(op)
                    resource = self._resources.get(key)
                    if resource is None:
                        return None
            return resource.to_dict()

    def check(self, op_id: str) -> Optional[Operation]:
        """Advance an operation by one status check and return it."""
        with self._lock:
            op = self._operations.get(op_id)
            if op is None:
                return None
            self._advance(op)
            return op

    def resource_body(self, resource_type: str, name: str) -> Optional[dict[str, Any]]:
        with self._lock:
            resource = self._resources.get((resource_type, name))
            return resource.to_dict() if resource is not None else None

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {"resources": len(self._resources), "operations": len(self._operations)}

    def _begin(self, kind: str, resource: _Resource, style: str, fail: bool) -> Operation:
        op = Operation(
            id=uuid.uuid4().hex,
            kind=kind,
            resource_type=resource.resource_type,
            name=resource.name,
            style=style,
            polls_left=self._polls,
            fail=fail,
        )
        self._operations[op.id] = op
        resource.pending = op.id
        return op

    def _advance(self, op: Operation) -> None:
        if op.terminal:
            return
        op.checks += 1
        if op.polls_left > 0:
            op.polls_left -= 1
            return

        key = (op.resource_type, op.name)
        resource = self._resources.get(key)
        if op.fail:
            op.status = FAILED
            op.error = _failure(op.resource_type, op.name)
            if resource is not None:
                resource.state = FAILED
                resource.properties = {**resource.properties, "error": op.error}
                resource.pending = None
            return

        op.status = SUCCEEDED
        if resource is None:
            return
        if op.kind == "delete":
            del self._resources[key]
        else:
            resource.state = SUCCEEDED
            resource.pending = None


def _failure(resource_type: str, name: str) -> dict[str, Any]:
    return {
        "code": "SimulatedFailure",
        "message": f"{resource_type} {name!r} could not be provisioned",
    }
