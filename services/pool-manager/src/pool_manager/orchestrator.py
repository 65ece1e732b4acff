"""Container orchestrator adapter: one worker = one detached Docker container.

The container id is the worker's task id.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import docker
import structlog

from shared.contracts.queues.worker_lifecycle import WORKER_STATUS_STREAM

from .config import PoolManagerSettings
from .docker_ops import DockerClientWrapper
from .errors import LaunchFailed

logger = structlog.get_logger()

WORKER_ID_LABEL = "com.vpool.worker.id"
WORKER_TYPE_LABEL = "com.vpool.type"
STACK_LABEL = "com.vpool.stack"
WORKER_TYPE = "worker"


# Called with the task id of a created, not yet started, worker
TaskCreatedHook = Callable[[str], Awaitable[Any]]


class Orchestrator(Protocol):
    async def start_worker(
        self,
        worker_id: str,
        env: dict[str, str] | None = None,
        on_created: TaskCreatedHook | None = None,
    ) -> str: ...

    async def stop_worker(self, task_id: str, reason: str) -> None: ...


def _is_transient(error: docker.errors.APIError) -> bool:
    return error.is_server_error()


class DockerOrchestrator:
    """Starts and stops worker containers through the Docker API."""

    def __init__(
        self,
        settings: PoolManagerSettings,
        docker_client: DockerClientWrapper | None = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
    ):
        self.settings = settings
        self.docker = docker_client or DockerClientWrapper()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    def worker_labels(self, worker_id: str) -> dict[str, str]:
        labels = self.settings.docker_labels()
        labels[STACK_LABEL] = self.settings.stack_name
        labels[WORKER_ID_LABEL] = worker_id
        labels[WORKER_TYPE_LABEL] = WORKER_TYPE
        return labels

    def worker_env(self, worker_id: str, extra: dict[str, str] | None = None) -> dict[str, str]:
        env = {
            "VP_ID": worker_id,
            "REDIS_URL": self.settings.worker_redis_url or self.settings.redis_url,
            "WORKER_STATUS_STREAM": WORKER_STATUS_STREAM,
        }
        env.update(extra or {})
        return env

    async def start_worker(
        self,
        worker_id: str,
        env: dict[str, str] | None = None,
        on_created: TaskCreatedHook | None = None,
    ) -> str:
        """Launch a worker container and return its task id.

        The container is created first and started only after `on_created`
        returns, so the caller can record the task id before Docker emits the
        container's start event. If the hook raises, the container is removed
        unstarted and the hook's error propagates.
        """
        container_name = f"{self.settings.worker_name_prefix}-{worker_id}"
        create_kwargs = {
            "image": self.settings.worker_image,
            "name": container_name,
            "environment": self.worker_env(worker_id, env),
            "labels": self.worker_labels(worker_id),
        }
        if self.settings.docker_network:
            create_kwargs["network"] = self.settings.docker_network
        else:
            create_kwargs["network_mode"] = "host"

        logger.info(
            "starting_worker",
            worker_id=worker_id,
            image=self.settings.worker_image,
            container_name=container_name,
            network=self.settings.docker_network or "host",
        )

        try:
            await self._ensure_image()
            container = await self._with_retries(
                "create_worker", lambda: self.docker.create_container(**create_kwargs)
            )
        except docker.errors.DockerException as e:
            logger.error("worker_start_failed", worker_id=worker_id, error=str(e))
            raise LaunchFailed(worker_id, str(e)) from e

        task_id = getattr(container, "id", None)
        if not task_id:
            raise LaunchFailed(worker_id, "orchestrator returned no task id")

        if on_created is not None:
            try:
                await on_created(task_id)
            except Exception:
                await self._discard(task_id)
                raise

        try:
            await self._with_retries("start_worker", lambda: self.docker.start_container(task_id))
        except docker.errors.DockerException as e:
            logger.error(
                "worker_start_failed", worker_id=worker_id, task_id=task_id, error=str(e)
            )
            await self._discard(task_id)
            raise LaunchFailed(worker_id, str(e)) from e

        logger.info("worker_started", worker_id=worker_id, task_id=task_id)
        return task_id

    async def stop_worker(self, task_id: str, reason: str) -> None:
        """Stop a worker container. A container that no longer exists counts as stopped."""
        logger.info("stopping_worker", task_id=task_id, reason=reason)
        try:
            await self._with_retries("stop_worker", lambda: self.docker.stop_container(task_id))
        except docker.errors.NotFound:
            logger.info("worker_already_gone", task_id=task_id)
            return
        logger.info("worker_stopped", task_id=task_id, reason=reason)

        if self.settings.remove_stopped_workers:
            try:
                await self.docker.remove_container(task_id, force=True)
            except docker.errors.APIError as e:
                # Already stopped; removal is best effort
                logger.warning("worker_remove_failed", task_id=task_id, error=str(e))

    async def _discard(self, task_id: str) -> None:
        try:
            await self.docker.remove_container(task_id, force=True)
        except docker.errors.APIError as e:
            logger.warning("worker_discard_failed", task_id=task_id, error=str(e))

    async def _ensure_image(self) -> None:
        image = self.settings.worker_image
        if await self.docker.image_exists(image):
            return
        logger.info("pulling_worker_image", image=image)
        await self._with_retries("pull_image", lambda: self.docker.pull_image(image))

    async def _with_retries(self, operation: str, call):
        for attempt in range(self.max_attempts):
            try:
                return await call()
            except docker.errors.NotFound:
                raise
            except docker.errors.APIError as e:
                if not _is_transient(e) or attempt == self.max_attempts - 1:
                    raise
                wait_time = self.backoff_base * 2**attempt
                logger.warning(
                    "docker_call_retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    wait_seconds=wait_time,
                    error=str(e),
                )
                await asyncio.sleep(wait_time)
