from __future__ import annotations

import threading
import time

from resource_ops import (
    LockRegistry,
    OperationContext,
    OperationHandle,
    PollPolicy,
    Poller,
    ReadBudget,
    ReadBudgetConfig,
    RedisConfig,
    RequestsTransport,
    ResourceClient,
    SUBNET_RESOURCE_NAME,
    VIRTUAL_NETWORK_RESOURCE_NAME,
)
from resource_ops.redis_throttle import RedisReadBudget

SIMULATOR = "http://localhost:8000"


def named_locks() -> None:
    print("== Named locks ==")
    locks = LockRegistry()

    def attach(subnet: str) -> None:
        with locks.hold(VIRTUAL_NETWORK_RESOURCE_NAME, "vnet-1"):
            print("attaching", subnet)
            time.sleep(0.1)

    threads = [threading.Thread(target=attach, args=(f"subnet-{i}",)) for i in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # Several keys at once: always through hold_many, which sorts them.
    with locks.hold_many((VIRTUAL_NETWORK_RESOURCE_NAME, "vnet-1"), (SUBNET_RESOURCE_NAME, "subnet-0")) as tokens:
        print("holding", [str(t.key) for t in tokens])
    print("entries left:", len(locks))


def poll_an_operation() -> None:
    print("== Poll a long-running operation ==")
    transport = RequestsTransport(base_url=SIMULATOR)
    poller = Poller(transport, PollPolicy(initial_interval=0.5, max_interval=2.0))
    ctx = OperationContext(timeout=60)

    handle = poller.begin("PUT", "/resources/azurerm_subnet/web?style=async", ctx, json={"properties": {}})
    print("polling", handle)
    token = handle.continuation_token()

    # Another process could pick the operation up from the token.
    resumed = OperationHandle.from_continuation_token(token)
    result = poller.poll_until_done(resumed, ctx)
    print(result.to_dict())


def resource_client() -> None:
    print("== Resource client ==")
    transport = RequestsTransport(base_url=SIMULATOR)
    client = ResourceClient(
        transport,
        LockRegistry(),
        poller=Poller(transport, PollPolicy(initial_interval=0.5), throttle=ReadBudget(ReadBudgetConfig(10, 5))),
    )
    ctx = OperationContext()
    parents = [(VIRTUAL_NETWORK_RESOURCE_NAME, "vnet-1")]

    created = client.create_or_update("/resources/azurerm_subnet/db?style=location", {}, ctx, lock_on=parents)
    print("created", created.resource)
    print("read", client.get("/resources/azurerm_subnet/db", ctx))
    client.delete("/resources/azurerm_subnet/db?style=provisioning", ctx, lock_on=parents)
    print("after delete", client.get("/resources/azurerm_subnet/db", ctx))


def redis_read_budget() -> None:
    print("== Redis read budget ==")
    budget = RedisReadBudget(
        ReadBudgetConfig(capacity=10, refill_rate=5),
        RedisConfig(host="localhost", port=6379, key_prefix="armops:budget:", fail_open=True),
    )

    for i in range(15):
        r = budget.check("management.azure.com")
        print(i, r.allowed, f"remaining={r.remaining:.2f}")


if __name__ == "__main__":
    named_locks()
    # Uncomment if the simulator is running locally (python -m app)
    # poll_an_operation()
    # resource_client()
    # Uncomment if Redis is running locally
    # redis_read_budget()
