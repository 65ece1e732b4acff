from pydantic import Field

from shared.contracts.base import QueueMeta


class TaskStateChange(QueueMeta):
    """Orchestrator notification that a worker task changed state.

    Delivery is at-least-once with no cross-task ordering.
    """

    task_id: str = Field(..., min_length=1)
    last_status: str  # e.g. "RUNNING", "STOPPED"
    stop_code: str | None = None
