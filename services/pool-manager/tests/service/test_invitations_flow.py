import asyncio

import httpx
import pytest
import respx

from pool_manager.assets import AssetProbe
from pool_manager.errors import (
    AssetNotFound,
    BucketNameMissing,
    StageNotFound,
    VpAlreadyAssigned,
    VpNotAvailable,
    VpNotFound,
)
from pool_manager.invitations import InvitationHandler
from pool_manager.store import WorkerIndex
from shared.contracts.dto.worker import UNASSIGNED, WorkerStatus

BUCKET_URL = "https://assets.example.com"


@pytest.fixture
def handler(workers, stages):
    return InvitationHandler(workers, stages, AssetProbe(BUCKET_URL), terminal_ttl_seconds=3600)


@pytest.mark.asyncio
async def test_invitation_claims_available_worker(handler, workers, make_worker, make_stage):
    stage = await make_stage("s1", stage_arn="arn:stage/1")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    claimed = await handler.create_invitation("s1")

    assert claimed.id == "w1"
    record = await workers.get("w1")
    assert record.status == WorkerStatus.INVITED
    assert record.assigned_stage_arn == "arn:stage/1"
    assert record.stage_endpoints == stage.stage_endpoints
    assert record.last_update_source == "invite-api"


@pytest.mark.asyncio
async def test_unknown_stage(handler):
    with pytest.raises(StageNotFound):
        await handler.create_invitation("nope")


@pytest.mark.asyncio
async def test_no_worker_then_worker_becomes_available(handler, workers, make_worker, make_stage):
    await make_stage("S1")

    with pytest.raises(VpNotAvailable) as exc_info:
        await handler.create_invitation("S1")
    assert exc_info.value.status_code == 404

    await make_worker("W1", WorkerStatus.AVAILABLE)
    await handler.create_invitation("S1")

    record = await workers.get("W1")
    assert record.status == WorkerStatus.INVITED
    assert record.assigned_stage_arn == "S1"


@pytest.mark.asyncio
async def test_stage_with_worker_is_rejected_before_claim(handler, workers, make_worker, make_stage):
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)
    await make_worker("w2", WorkerStatus.AVAILABLE)
    await handler.create_invitation("s1")

    with pytest.raises(VpAlreadyAssigned) as exc_info:
        await handler.create_invitation("s1")

    assert exc_info.value.status_code == 404
    assert (await workers.get("w2")).status == WorkerStatus.AVAILABLE


@pytest.mark.asyncio
async def test_lost_claim_race_is_conflict(handler, workers, make_worker, make_stage, monkeypatch):
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    original_query = workers.query_by_index

    async def query_then_steal(index, value, limit=None):
        result = await original_query(index, value, limit)
        if index == WorkerIndex.STATUS:
            # Another request claims the candidate between read and write
            await workers.update("w1", set_fields={"status": WorkerStatus.INVITED})
        return result

    monkeypatch.setattr(workers, "query_by_index", query_then_steal)

    with pytest.raises(VpAlreadyAssigned) as exc_info:
        await handler.create_invitation("s1")

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_concurrent_invitations_claim_single_worker_once(
    handler, workers, make_worker, make_stage
):
    for i in range(5):
        await make_stage(f"s{i}")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    results = await asyncio.gather(
        *(handler.create_invitation(f"s{i}") for i in range(5)), return_exceptions=True
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 4
    assert all(isinstance(f, (VpAlreadyAssigned, VpNotAvailable)) for f in failures)

    record = await workers.get("w1")
    assert record.status == WorkerStatus.INVITED
    held = [
        w for w in await workers.list_all() if w.assigned_stage_arn != UNASSIGNED
    ]
    assert len(held) == 1


@pytest.mark.asyncio
async def test_concurrent_invitations_for_same_stage_assign_one_worker(
    handler, workers, make_worker, make_stage
):
    await make_stage("s1")
    for i in range(3):
        await make_worker(f"w{i}", WorkerStatus.AVAILABLE)

    results = await asyncio.gather(
        *(handler.create_invitation("s1") for _ in range(3)), return_exceptions=True
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, VpAlreadyAssigned) for r in results if isinstance(r, Exception))
    assert len(await workers.query_by_index(WorkerIndex.STAGE, "s1")) == 1


@pytest.mark.asyncio
@respx.mock
async def test_invitation_with_existing_asset(handler, workers, make_worker, make_stage):
    respx.head(f"{BUCKET_URL}/intro.mp4").mock(return_value=httpx.Response(200))
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    await handler.create_invitation("s1", asset_name="intro.mp4")

    assert (await workers.get("w1")).asset_name == "intro.mp4"


@pytest.mark.asyncio
@respx.mock
@pytest.mark.parametrize("status_code", [403, 404])
async def test_invitation_with_missing_asset(status_code, handler, workers, make_worker, make_stage):
    respx.head(f"{BUCKET_URL}/missing.mp4").mock(return_value=httpx.Response(status_code))
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    with pytest.raises(AssetNotFound):
        await handler.create_invitation("s1", asset_name="missing.mp4")

    assert (await workers.get("w1")).status == WorkerStatus.AVAILABLE


@pytest.mark.asyncio
async def test_invitation_with_asset_but_no_bucket(workers, stages, make_worker, make_stage):
    handler = InvitationHandler(workers, stages, AssetProbe(""))
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)

    with pytest.raises(BucketNameMissing):
        await handler.create_invitation("s1", asset_name="intro.mp4")


@pytest.mark.asyncio
async def test_kick_clears_assignment(handler, workers, make_worker, make_stage):
    await make_stage("s1")
    await make_worker("w1", WorkerStatus.AVAILABLE)
    await handler.create_invitation("s1", asset_name=None)

    await handler.kick("s1")

    record = await workers.get("w1")
    assert record.status == WorkerStatus.KICKED
    assert record.assigned_stage_arn == UNASSIGNED
    assert record.stage_endpoints == {}
    assert record.asset_name is None
    assert record.ttl is not None
    assert record.last_update_source == "kick-api"


@pytest.mark.asyncio
async def test_kick_without_assigned_worker(handler, make_stage):
    await make_stage("s1")

    with pytest.raises(VpNotFound):
        await handler.kick("s1")


@pytest.mark.asyncio
async def test_kick_unknown_stage(handler):
    with pytest.raises(StageNotFound):
        await handler.kick("nope")


@pytest.mark.asyncio
async def test_list_workers_most_recent_first(handler, workers, make_worker):
    await make_worker("w1")
    await make_worker("w2")
    await workers.update("w1", set_fields={"running": True})

    listing = await handler.list_workers()

    assert listing.total_count == 2
    assert [w.id for w in listing.workers] == ["w1", "w2"]
