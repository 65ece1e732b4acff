from unittest.mock import AsyncMock

import fakeredis
from fakeredis import aioredis
import pytest

from pool_manager.orchestrator import DockerOrchestrator
from pool_manager.store import StageStore, WorkerStore
from shared.contracts.dto.stage import StageRecord
from shared.contracts.dto.worker import WorkerRecord, WorkerStatus


@pytest.fixture
async def redis_client():
    # Own server per test; default FakeRedis instances share state
    redis = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield redis
    await redis.aclose()


@pytest.fixture
def workers(redis_client):
    return WorkerStore(redis_client)


@pytest.fixture
def stages(redis_client):
    return StageStore(redis_client)


@pytest.fixture
def make_worker(workers):
    async def _make(worker_id: str, status: WorkerStatus = WorkerStatus.AVAILABLE, **fields):
        fields.setdefault("task_id", f"task-{worker_id}")
        return await workers.create(WorkerRecord(id=worker_id, status=status, **fields))

    return _make


@pytest.fixture
def make_stage(stages):
    async def _make(stage_id: str, stage_arn: str | None = None, **fields):
        fields.setdefault("stage_endpoints", {"whip": f"https://whip.example/{stage_id}"})
        return await stages.put(StageRecord(id=stage_id, stage_arn=stage_arn or stage_id, **fields))

    return _make


async def fake_start_worker(worker_id, env=None, on_created=None):
    task_id = f"task-{worker_id}"
    if on_created is not None:
        await on_created(task_id)
    return task_id


@pytest.fixture
def orchestrator():
    """Orchestrator double: task id is derived from the worker id."""
    orch = AsyncMock(spec=DockerOrchestrator)
    orch.start_worker.side_effect = fake_start_worker
    orch.stop_worker.return_value = None
    return orch
