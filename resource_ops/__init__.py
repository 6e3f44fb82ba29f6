from .config import PollPolicy, ReadBudgetConfig, RedisConfig, Timeouts
from .context import OperationContext
from .errors import (
    DeadlineExceededError,
    LockMisuseError,
    OperationCanceledError,
    OperationFailedError,
    OperationInterruptedError,
    ResourceOpsError,
    TransientTransportError,
    UnexpectedStatusError,
    UnrecognizedOperationError,
)
from .handlers import SUBNET_RESOURCE_NAME, VIRTUAL_NETWORK_RESOURCE_NAME, ResourceClient
from .locks import LockKey, LockRegistry, LockToken
from .pollers import ByBody, ByHeader, OperationHandle, Poller, SynchronousComplete, start_from
from .results import HttpResponse, OperationStatus, TerminalResult
from .throttle import BudgetResult, ReadBudget
from .transport import RequestsTransport, Transport

__all__ = [
    "PollPolicy",
    "ReadBudgetConfig",
    "RedisConfig",
    "Timeouts",
    "OperationContext",
    "ResourceOpsError",
    "LockMisuseError",
    "UnrecognizedOperationError",
    "TransientTransportError",
    "OperationFailedError",
    "OperationInterruptedError",
    "OperationCanceledError",
    "DeadlineExceededError",
    "UnexpectedStatusError",
    "LockKey",
    "LockToken",
    "LockRegistry",
    "ByHeader",
    "ByBody",
    "SynchronousComplete",
    "OperationHandle",
    "Poller",
    "start_from",
    "HttpResponse",
    "OperationStatus",
    "TerminalResult",
    "BudgetResult",
    "ReadBudget",
    "Transport",
    "RequestsTransport",
    "ResourceClient",
    "VIRTUAL_NETWORK_RESOURCE_NAME",
    "SUBNET_RESOURCE_NAME",
]

try:
    from .redis_throttle import RedisReadBudget

    __all__ += ["RedisReadBudget"]
except ImportError:
    # Allows using the in-memory read budget without redis-py installed.
    pass
