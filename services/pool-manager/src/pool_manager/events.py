import asyncio
from typing import Any

import structlog

from shared.contracts.queues.task_events import TaskStateChange

from .docker_ops import DockerClientWrapper
from .orchestrator import WORKER_TYPE, WORKER_TYPE_LABEL
from .reconciler import TaskLifecycleReconciler

logger = structlog.get_logger()

# Docker container actions mapped to orchestrator task states
_ACTION_STATUS = {
    "start": "RUNNING",
    "die": "STOPPED",
}


def to_task_state_change(event: dict[str, Any]) -> TaskStateChange | None:
    """Translate a Docker event of a worker container. None for anything else."""
    if event.get("Type") != "container":
        return None
    status = _ACTION_STATUS.get(event.get("Action", ""))
    if status is None:
        return None

    actor = event.get("Actor", {})
    attributes = actor.get("Attributes", {})
    if attributes.get(WORKER_TYPE_LABEL) != WORKER_TYPE:
        return None

    task_id = actor.get("ID") or event.get("id")
    if not task_id:
        return None

    return TaskStateChange(
        task_id=task_id,
        last_status=status,
        stop_code=attributes.get("exitCode") if status == "STOPPED" else None,
    )


class DockerEventsListener:
    """
    Listens for Docker events of worker containers and feeds the reconciler.
    """

    def __init__(
        self,
        docker_client: DockerClientWrapper,
        reconciler: TaskLifecycleReconciler,
        reconnect_delay: float = 5.0,
    ):
        self.docker = docker_client
        self.reconciler = reconciler
        self.reconnect_delay = reconnect_delay
        self._running = False

    async def start(self) -> None:
        """Listen until stopped, reconnecting when the event stream drops."""
        self._running = True
        logger.info("docker_events_listener_started")
        filters = {
            "type": "container",
            "event": list(_ACTION_STATUS),
            "label": f"{WORKER_TYPE_LABEL}={WORKER_TYPE}",
        }

        while self._running:
            try:
                async for event in self.docker.events(filters=filters):
                    await self._handle_event(event)
                    if not self._running:
                        break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("docker_events_stream_error", error=str(e))
            if self._running:
                await asyncio.sleep(self.reconnect_delay)

        logger.info("docker_events_listener_exited")

    def stop(self) -> None:
        """Stop listening."""
        self._running = False
        logger.info("docker_events_listener_stopped")

    async def _handle_event(self, event: dict[str, Any]) -> None:
        change = to_task_state_change(event)
        if change is None:
            return
        if change.stop_code not in (None, "0"):
            logger.warning(
                "worker_container_crashed", task_id=change.task_id, exit_code=change.stop_code
            )
        await self.reconciler.handle(change)
