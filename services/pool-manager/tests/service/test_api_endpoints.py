from httpx import ASGITransport, AsyncClient
import pytest

from pool_manager.config import PoolManagerSettings
from pool_manager.main import app
from pool_manager.services import build_services
from shared.contracts.dto.worker import WorkerStatus


@pytest.fixture
def services(redis_client, orchestrator):
    settings = PoolManagerSettings(
        min_warm_workers=2,
        max_warm_workers=4,
        video_assets_bucket_url="",
        subscriber_urls=[],
    )
    return build_services(redis_client, orchestrator, settings)


@pytest.fixture
async def client(services):
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.services


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_invitation_scenario(client, make_stage, make_worker, workers):
    await make_stage("S1")

    response = await client.post("/api/invitations", json={"stage_id": "S1"})
    assert response.status_code == 404
    assert response.json()["name"] == "VpNotAvailableException"

    await make_worker("W1", WorkerStatus.AVAILABLE)
    response = await client.post("/api/invitations", json={"stage_id": "S1"})
    assert response.status_code == 200
    assert response.json() == {}

    record = await workers.get("W1")
    assert record.status == WorkerStatus.INVITED
    assert record.assigned_stage_arn == "S1"


@pytest.mark.asyncio
async def test_invitation_errors_are_named(client, make_stage, make_worker):
    response = await client.post("/api/invitations", json={"stage_id": "missing"})
    assert response.status_code == 404
    assert response.json()["name"] == "StageNotFoundException"

    await make_stage("S1")
    await make_worker("W1", WorkerStatus.AVAILABLE)
    response = await client.post(
        "/api/invitations", json={"stage_id": "S1", "asset_name": "intro.mp4"}
    )
    assert response.status_code == 404
    assert response.json()["name"] == "BucketNameMissingException"

    await client.post("/api/invitations", json={"stage_id": "S1"})
    response = await client.post("/api/invitations", json={"stage_id": "S1"})
    assert response.status_code == 404
    assert response.json()["name"] == "VpAlreadyAssignedException"


@pytest.mark.asyncio
async def test_malformed_invitation_rejected(client, workers):
    response = await client.post("/api/invitations", json={"stage_id": ""})

    assert response.status_code == 422
    assert await workers.list_all() == []


@pytest.mark.asyncio
async def test_kick(client, make_stage, make_worker, workers):
    await make_stage("S1")
    await make_worker("W1", WorkerStatus.AVAILABLE)
    await client.post("/api/invitations", json={"stage_id": "S1"})

    response = await client.post("/api/kick", json={"stage_id": "S1"})
    assert response.status_code == 200

    record = await workers.get("W1")
    assert record.status == WorkerStatus.KICKED
    assert record.ttl is not None

    response = await client.post("/api/kick", json={"stage_id": "S1"})
    assert response.status_code == 404
    assert response.json()["name"] == "VpNotFoundException"


@pytest.mark.asyncio
async def test_stop_all_partial_failure_is_200(client, make_worker, orchestrator):
    for i in range(3):
        await make_worker(f"w{i}", WorkerStatus.RUNNING)

    async def stop(task_id, reason):
        if task_id == "task-w1":
            raise RuntimeError("stop failed")

    orchestrator.stop_worker.side_effect = stop

    response = await client.post("/api/workers/stop-all")

    assert response.status_code == 200
    body = response.json()
    assert body["total_found"] == 3
    assert body["successful_stops"] == 2
    assert body["failed_stops"] == 1
    assert len(body["results"]) == 3


@pytest.mark.asyncio
async def test_list_workers(client, make_worker):
    await make_worker("w1")
    await make_worker("w2", WorkerStatus.RUNNING)

    response = await client.get("/api/workers")

    assert response.status_code == 200
    body = response.json()
    assert body["total_count"] == 2
    assert {w["id"] for w in body["workers"]} == {"w1", "w2"}


@pytest.mark.asyncio
async def test_pool_reconcile(client, orchestrator):
    response = await client.post("/api/pool/reconcile")

    assert response.status_code == 200
    assert response.json()["started"] == 2
    assert orchestrator.start_worker.await_count == 2


@pytest.mark.asyncio
async def test_task_event(client, make_worker, workers):
    await make_worker("w1", WorkerStatus.PROVISIONING)

    response = await client.post(
        "/api/tasks/events", json={"task_id": "task-w1", "last_status": "RUNNING"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "RUNNING"
    assert (await workers.get("w1")).running is True

    response = await client.post(
        "/api/tasks/events", json={"task_id": "unknown", "last_status": "STOPPED"}
    )
    assert response.status_code == 200
    assert response.json() is None


@pytest.mark.asyncio
async def test_stage_registry(client):
    response = await client.put(
        "/api/stages/s1",
        json={"stage_arn": "arn:stage/1", "stage_endpoints": {"whip": "https://whip"}},
    )
    assert response.status_code == 200
    assert response.json()["stage_arn"] == "arn:stage/1"

    response = await client.get("/api/stages/")
    assert [s["id"] for s in response.json()] == ["s1"]

    response = await client.delete("/api/stages/s1")
    assert response.status_code == 204

    response = await client.get("/api/stages/s1")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_correlation_id_echoed(client):
    response = await client.get("/health", headers={"X-Correlation-ID": "req_test"})

    assert response.headers["X-Correlation-ID"] == "req_test"
