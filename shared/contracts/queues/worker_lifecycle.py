from typing import Literal

from pydantic import Field

from shared.contracts.base import QueueMeta

WORKER_STATUS_STREAM = "vp:worker:status"


class WorkerStatusReport(QueueMeta):
    """Worker's own state report, published on WORKER_STATUS_STREAM."""

    worker_id: str = Field(..., min_length=1)
    event: Literal["ready", "joined", "left", "errored"]
    error: str | None = None  # Only for "errored"
