"""Invitation, kick and worker listing endpoints."""

from fastapi import APIRouter, Depends

from shared.contracts.dto.stage import InvitationRequest, KickRequest
from shared.contracts.dto.worker import StopAllSummary, WorkerList

from ..dependencies import get_invitations, get_pool
from ..invitations import InvitationHandler
from ..pool import PoolController

router = APIRouter(tags=["workers"])


@router.post("/invitations")
async def create_invitation(
    body: InvitationRequest,
    invitations: InvitationHandler = Depends(get_invitations),
) -> dict:
    """Claim an available worker for the stage."""
    await invitations.create_invitation(body.stage_id, body.asset_name)
    return {}


@router.post("/kick")
async def kick_worker(
    body: KickRequest,
    invitations: InvitationHandler = Depends(get_invitations),
) -> dict:
    """Remove the worker assigned to the stage."""
    await invitations.kick(body.stage_id)
    return {}


@router.get("/workers", response_model=WorkerList)
async def list_workers(
    invitations: InvitationHandler = Depends(get_invitations),
) -> WorkerList:
    """List all worker records, most recently updated first."""
    return await invitations.list_workers()


@router.post("/workers/stop-all", response_model=StopAllSummary)
async def stop_all_workers(pool: PoolController = Depends(get_pool)) -> StopAllSummary:
    """Stop every live worker. Partial failures are reported in the summary."""
    return await pool.stop_all()
