"""Stage invitations: claim an AVAILABLE worker for a stage, kick it off again."""

import structlog

from shared.contracts.dto.stage import StageRecord
from shared.contracts.dto.worker import WorkerList, WorkerRecord, WorkerStatus

from .assets import AssetProbe
from .errors import (
    ConditionFailed,
    StageNotFound,
    VpAlreadyAssigned,
    VpNotAvailable,
    VpNotFound,
)
from .store import StageStore, WorkerIndex, WorkerStore, ttl_from_now

logger = structlog.get_logger()

INVITE_SOURCE = "invite-api"
KICK_SOURCE = "kick-api"

# Fields cleared when a worker leaves a stage
ASSIGNMENT_FIELDS = ("assigned_stage_arn", "stage_endpoints", "asset_name")


class InvitationHandler:
    def __init__(
        self,
        workers: WorkerStore,
        stages: StageStore,
        assets: AssetProbe,
        terminal_ttl_seconds: int = 3600,
    ):
        self.workers = workers
        self.stages = stages
        self.assets = assets
        self.terminal_ttl_seconds = terminal_ttl_seconds

    async def _get_stage(self, stage_id: str) -> StageRecord:
        stage = await self.stages.get(stage_id)
        if stage is None:
            raise StageNotFound(f"Stage {stage_id} not found")
        return stage

    async def create_invitation(self, stage_id: str, asset_name: str | None = None) -> WorkerRecord:
        """Assign one AVAILABLE worker to the stage.

        The status guard on the final write is what makes the claim safe. The
        stage pre-check only turns the common duplicate request into a 404
        before a worker is touched; two concurrent invitations that both pass
        it still serialize on the guarded write.

        Raises:
            StageNotFound, BucketNameMissing, AssetNotFound, VpNotAvailable
            VpAlreadyAssigned: 404 from the pre-check, 409 when the claim
                loses a race. The claim is never retried here.
        """
        stage = await self._get_stage(stage_id)

        if asset_name is not None:
            await self.assets.ensure_exists(asset_name)

        assigned = await self.workers.query_by_index(WorkerIndex.STAGE, stage.stage_arn, limit=1)
        if assigned:
            raise VpAlreadyAssigned(f"Stage {stage_id} already has worker {assigned[0].id}")

        candidates = await self.workers.query_by_index(
            WorkerIndex.STATUS, WorkerStatus.AVAILABLE.value, limit=1
        )
        if not candidates:
            raise VpNotAvailable("No virtual participant is available")
        candidate = candidates[0]

        result = await self.workers.update_if(
            candidate.id,
            expected={"status": WorkerStatus.AVAILABLE},
            set_fields={
                "status": WorkerStatus.INVITED,
                "assigned_stage_arn": stage.stage_arn,
                "stage_endpoints": stage.stage_endpoints,
                "asset_name": asset_name,
            },
            source=INVITE_SOURCE,
        )
        if not result.applied:
            logger.info(
                "invitation_claim_conflict",
                stage_id=stage_id,
                worker_id=candidate.id,
                reason=result.reason,
            )
            raise VpAlreadyAssigned(
                f"Worker {candidate.id} was claimed concurrently", conflict=True
            )

        logger.info(
            "worker_invited",
            stage_id=stage_id,
            stage_arn=stage.stage_arn,
            worker_id=candidate.id,
            asset_name=asset_name,
        )
        return result.record

    async def kick(self, stage_id: str) -> WorkerRecord:
        """Retire the stage's worker. The container keeps running."""
        stage = await self._get_stage(stage_id)

        assigned = await self.workers.query_by_index(WorkerIndex.STAGE, stage.stage_arn, limit=1)
        if not assigned:
            raise VpNotFound(f"No virtual participant assigned to stage {stage_id}")
        worker = assigned[0]

        try:
            record = await self.workers.update(
                worker.id,
                set_fields={
                    "status": WorkerStatus.KICKED,
                    "ttl": ttl_from_now(self.terminal_ttl_seconds),
                },
                remove_fields=ASSIGNMENT_FIELDS,
                source=KICK_SOURCE,
            )
        except ConditionFailed as e:
            # Record expired between lookup and write
            raise VpNotFound(f"Worker {worker.id} no longer exists") from e
        logger.info("worker_kicked", stage_id=stage_id, worker_id=worker.id, ttl=record.ttl)
        return record

    async def list_workers(self) -> WorkerList:
        workers = await self.workers.list_all()
        workers.sort(key=lambda w: w.updated_at, reverse=True)
        return WorkerList(workers=workers, total_count=len(workers))
