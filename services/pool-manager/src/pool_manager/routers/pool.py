"""Pool sizing and orchestrator event endpoints."""

from fastapi import APIRouter, Depends

from shared.contracts.dto.worker import PoolRunSummary, WorkerRecord
from shared.contracts.queues.task_events import TaskStateChange

from ..dependencies import get_pool, get_reconciler
from ..pool import PoolController
from ..reconciler import TaskLifecycleReconciler

router = APIRouter(tags=["pool"])


@router.post("/pool/reconcile", response_model=PoolRunSummary)
async def reconcile_pool(pool: PoolController = Depends(get_pool)) -> PoolRunSummary:
    """Run one pool sizing pass (for external schedulers)."""
    return await pool.run_once()


@router.post("/tasks/events", response_model=WorkerRecord | None)
async def task_state_changed(
    change: TaskStateChange,
    reconciler: TaskLifecycleReconciler = Depends(get_reconciler),
) -> WorkerRecord | None:
    """Reconcile one task state change. Untracked tasks return null."""
    return await reconciler.handle(change)
