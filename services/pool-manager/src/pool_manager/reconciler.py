"""Apply orchestrator task state changes to worker records.

Notifications arrive at least once and out of order across tasks. Every
branch below is idempotent: a duplicate sets the same fields again, and a
STOPPED record keeps the ttl it already has.
"""

import structlog

from shared.contracts.dto.worker import WorkerRecord, WorkerStatus
from shared.contracts.queues.task_events import TaskStateChange

from .errors import ConditionFailed
from .store import WorkerIndex, WorkerStore, ttl_from_now

logger = structlog.get_logger()

TASK_STATE_SOURCE = "task-state-change"

# Only records that never reached the pool take status from the orchestrator
_STARTING_STATUSES = (WorkerStatus.PROVISIONING, WorkerStatus.PENDING)


class TaskLifecycleReconciler:
    def __init__(self, workers: WorkerStore, terminal_ttl_seconds: int = 3600):
        self.workers = workers
        self.terminal_ttl_seconds = terminal_ttl_seconds

    async def handle(self, change: TaskStateChange) -> WorkerRecord | None:
        """Reconcile one notification. Returns the updated record, None when dropped."""
        log = logger.bind(task_id=change.task_id, last_status=change.last_status)

        matches = await self.workers.query_by_index(WorkerIndex.TASK, change.task_id, limit=1)
        if not matches:
            log.info("task_not_tracked")
            return None
        worker = matches[0]
        log = log.bind(worker_id=worker.id, status=worker.status.value)

        status = change.last_status.upper()
        try:
            if status == WorkerStatus.STOPPED.value:
                record = await self._stopped(worker, change)
            elif status == WorkerStatus.RUNNING.value:
                record = await self._running(worker)
            else:
                record = await self._other(worker, status)
        except (ConditionFailed, ValueError) as e:
            log.warning("task_state_update_failed", error=str(e))
            return None

        if record is not None:
            log.info("task_state_reconciled", new_status=record.status.value)
        return record

    async def _stopped(self, worker: WorkerRecord, change: TaskStateChange) -> WorkerRecord:
        set_fields = {"status": WorkerStatus.STOPPED, "running": False}
        if worker.status != WorkerStatus.STOPPED or worker.ttl is None:
            set_fields["ttl"] = ttl_from_now(self.terminal_ttl_seconds)
        if change.stop_code:
            set_fields["last_error"] = f"task stopped: {change.stop_code}"
        return await self.workers.update(
            worker.id,
            set_fields=set_fields,
            remove_fields=("assigned_stage_arn", "stage_endpoints"),
            source=TASK_STATE_SOURCE,
        )

    async def _running(self, worker: WorkerRecord) -> WorkerRecord:
        if worker.status in _STARTING_STATUSES:
            result = await self.workers.update_if(
                worker.id,
                expected={"status": worker.status},
                set_fields={"status": WorkerStatus.RUNNING, "running": True},
                source=TASK_STATE_SOURCE,
            )
            if result.applied:
                return result.record
        # Worker already moved on (e.g. reported ready); only flag the task as up
        return await self.workers.update(
            worker.id, set_fields={"running": True}, source=TASK_STATE_SOURCE
        )

    async def _other(self, worker: WorkerRecord, status: str) -> WorkerRecord | None:
        try:
            new_status = WorkerStatus(status)
        except ValueError:
            logger.info("task_status_ignored", worker_id=worker.id, last_status=status)
            return None
        if worker.status not in _STARTING_STATUSES or new_status not in _STARTING_STATUSES:
            logger.info("task_status_ignored", worker_id=worker.id, last_status=status)
            return None
        result = await self.workers.update_if(
            worker.id,
            expected={"status": worker.status},
            set_fields={"status": new_status},
            source=TASK_STATE_SOURCE,
        )
        return result.record
