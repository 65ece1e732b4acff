"""Stage registry router."""

from fastapi import APIRouter, Depends, HTTPException, status

from shared.contracts.base import utcnow
from shared.contracts.dto.stage import StageRecord, StageUpsert

from ..dependencies import get_stages
from ..store import StageStore

router = APIRouter(prefix="/stages", tags=["stages"])


@router.get("/", response_model=list[StageRecord])
async def list_stages(stages: StageStore = Depends(get_stages)) -> list[StageRecord]:
    return await stages.list_all()


@router.get("/{stage_id}", response_model=StageRecord)
async def get_stage(stage_id: str, stages: StageStore = Depends(get_stages)) -> StageRecord:
    stage = await stages.get(stage_id)
    if stage is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stage {stage_id} not found",
        )
    return stage


@router.put("/{stage_id}", response_model=StageRecord)
async def put_stage(
    stage_id: str,
    body: StageUpsert,
    stages: StageStore = Depends(get_stages),
) -> StageRecord:
    """Register or refresh a stage."""
    existing = await stages.get(stage_id)
    record = StageRecord(
        id=stage_id,
        **body.model_dump(),
        created_at=existing.created_at if existing else utcnow(),
        updated_at=utcnow(),
    )
    return await stages.put(record)


@router.delete("/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_stage(stage_id: str, stages: StageStore = Depends(get_stages)) -> None:
    if not await stages.delete(stage_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stage {stage_id} not found",
        )
