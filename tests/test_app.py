"""End to end: ResourceClient against the simulator, through RequestsTransport.

The FastAPI TestClient stands in for the requests.Session, so the whole
stack runs in-process.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.settings import Settings
from resource_ops import (
    LockRegistry,
    OperationFailedError,
    OperationStatus,
    PollPolicy,
    Poller,
    RequestsTransport,
    ResourceClient,
    SUBNET_RESOURCE_NAME,
    VIRTUAL_NETWORK_RESOURCE_NAME,
)

from tests.conftest import RecordingContext

STYLES = ["async", "location", "provisioning", "sync"]


@pytest.fixture()
def client() -> TestClient:
    return TestClient(create_app(Settings(retry_after_seconds=0, polls_to_complete=1)))


@pytest.fixture()
def resources(client: TestClient) -> ResourceClient:
    transport = RequestsTransport(client, base_url="http://testserver")
    poller = Poller(transport, PollPolicy(initial_interval=0.0, max_interval=0.0))
    return ResourceClient(transport, LockRegistry(strict=True), poller=poller)


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "read_budget": None, "resources": 0, "operations": 0}


@pytest.mark.parametrize("style", STYLES)
def test_create_read_delete_round_trip(resources: ResourceClient, style: str) -> None:
    ctx = RecordingContext()
    resource_id = f"/resources/{SUBNET_RESOURCE_NAME}/web?style={style}"
    parents = [(VIRTUAL_NETWORK_RESOURCE_NAME, "vnet")]

    created = resources.create_or_update(
        resource_id, {"properties": {"addressPrefix": "10.0.1.0/24"}}, ctx, lock_on=parents
    )
    assert created.status is OperationStatus.SUCCEEDED
    assert created.resource["name"] == "web"
    assert created.resource["properties"]["provisioningState"] == "Succeeded"
    assert created.resource["properties"]["addressPrefix"] == "10.0.1.0/24"

    fetched = resources.get(f"/resources/{SUBNET_RESOURCE_NAME}/web", ctx)
    assert fetched["properties"]["provisioningState"] == "Succeeded"

    deleted = resources.delete(resource_id, ctx, lock_on=parents)
    assert deleted is not None
    assert deleted.status is OperationStatus.SUCCEEDED
    assert resources.get(f"/resources/{SUBNET_RESOURCE_NAME}/web", ctx) is None
    assert resources.delete(resource_id, ctx) is None


@pytest.mark.parametrize("style", STYLES)
def test_failed_operation_surfaces_the_server_message(resources: ResourceClient, style: str) -> None:
    with pytest.raises(OperationFailedError) as exc:
        resources.create_or_update(
            f"/resources/{SUBNET_RESOURCE_NAME}/bad?style={style}",
            {"simulateFailure": True},
            RecordingContext(),
        )
    assert str(exc.value) == "SimulatedFailure: azurerm_subnet 'bad' could not be provisioned"


def test_async_style_advertises_the_operation_url(client: TestClient) -> None:
    resp = client.put("/resources/azurerm_subnet/web?style=async", json={})
    assert resp.status_code == 201
    op_url = resp.headers["azure-asyncoperation"]
    assert op_url.startswith("http://testserver/operations/")

    first = client.get(op_url)
    assert first.json()["status"] == "InProgress"
    assert client.get(op_url).json()["status"] == "Succeeded"


def test_location_style_answers_202_until_done(client: TestClient) -> None:
    resp = client.put("/resources/azurerm_subnet/web?style=location", json={})
    assert resp.status_code == 202
    location = resp.headers["location"]
    assert client.get(location).status_code == 202
    assert client.get(location).status_code == 200


def test_retry_after_is_advertised_when_configured() -> None:
    client = TestClient(create_app(Settings(retry_after_seconds=3)))
    resp = client.delete("/resources/azurerm_subnet/missing")
    assert resp.status_code == 404
    resp = client.put("/resources/azurerm_subnet/web?style=location", json={})
    assert resp.headers["retry-after"] == "3"


def test_unknown_style_is_rejected(client: TestClient) -> None:
    resp = client.put("/resources/azurerm_subnet/web?style=eventually", json={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "InvalidStyle"


def test_unknown_operation_is_404(client: TestClient) -> None:
    resp = client.get("/operations/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "OperationNotFound"


def test_exhausted_read_budget_answers_429() -> None:
    client = TestClient(create_app(Settings(read_budget_capacity=1, read_budget_refill_per_sec=1.0)))
    client.put("/resources/azurerm_subnet/web?style=sync", json={})

    assert client.get("/resources/azurerm_subnet/web").status_code == 200
    throttled = client.get("/resources/azurerm_subnet/web")
    assert throttled.status_code == 429
    assert throttled.headers["retry-after"] == "1"
    assert throttled.json()["error"]["code"] == "TooManyRequests"
    assert client.get("/health").json()["read_budget"] == "memory"
