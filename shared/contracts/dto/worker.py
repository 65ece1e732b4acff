from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from shared.contracts.base import utcnow

# Sentinel stored in assigned_stage_arn while a worker holds no stage
UNASSIGNED = "unassigned"


class WorkerStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    PROVISIONING = "PROVISIONING"
    DEPROVISIONING = "DEPROVISIONING"
    INVITED = "INVITED"
    JOINED = "JOINED"
    ERRORED = "ERRORED"
    KICKED = "KICKED"
    AVAILABLE = "AVAILABLE"


# Counted against the pool bounds
WARM_STATUSES = frozenset(
    {
        WorkerStatus.AVAILABLE,
        WorkerStatus.PROVISIONING,
        WorkerStatus.PENDING,
        WorkerStatus.RUNNING,
    }
)

# Only these may carry a non-sentinel assigned_stage_arn
STAGE_HOLDING_STATUSES = frozenset(
    {
        WorkerStatus.INVITED,
        WorkerStatus.JOINED,
        WorkerStatus.RUNNING,
    }
)

# Off the stage but their container keeps running until reaped
REAPABLE_STATUSES = frozenset(
    {
        WorkerStatus.KICKED,
        WorkerStatus.ERRORED,
    }
)

# Backed by a live container
STOPPABLE_STATUSES = frozenset(
    {
        WorkerStatus.AVAILABLE,
        WorkerStatus.PROVISIONING,
        WorkerStatus.PENDING,
        WorkerStatus.INVITED,
        WorkerStatus.JOINED,
        WorkerStatus.RUNNING,
        *REAPABLE_STATUSES,
    }
)


class WorkerRecord(BaseModel):
    """Durable state of one virtual participant worker."""

    id: str
    status: WorkerStatus
    task_id: str = ""
    assigned_stage_arn: str = UNASSIGNED
    stage_endpoints: dict[str, str] = Field(default_factory=dict)
    asset_name: str | None = None
    running: bool = False
    last_update_source: str | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    ttl: int | None = None  # epoch seconds

    @property
    def is_assigned(self) -> bool:
        return self.assigned_stage_arn != UNASSIGNED


class WorkerList(BaseModel):
    """List workers response."""

    workers: list[WorkerRecord]
    total_count: int


class StopResult(BaseModel):
    worker_id: str
    task_id: str
    success: bool
    error: str | None = None


class StopAllSummary(BaseModel):
    """Bulk stop response. Always returned, even on partial failure."""

    total_found: int
    successful_stops: int
    failed_stops: int
    results: list[StopResult] = []


class PoolRunSummary(BaseModel):
    """Outcome of one pool sizing run."""

    observed: int
    min_warm_workers: int
    max_warm_workers: int
    started: int = 0
    stopped: int = 0
    reaped: int = 0
    failed: int = 0
    shortfall: int = 0
