import asyncio
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import docker
import structlog

logger = structlog.get_logger()


class DockerClientWrapper:
    """
    Async wrapper around blocking docker-py client.
    Abstracts Docker operations to allow mocking and non-blocking execution.
    """

    def __init__(self, client: docker.DockerClient | None = None, max_workers: int = 5):
        self._client = client or docker.from_env()
        # One extra thread so a blocked events stream never starves run/stop calls
        self._executor = ThreadPoolExecutor(max_workers=max_workers + 1)

    async def _run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def create_container(self, image: str, **kwargs) -> Any:
        """Create a container without starting it."""
        return await self._run(self._client.containers.create, image, **kwargs)

    async def start_container(self, container_id: str) -> None:
        """Start a created container."""
        container = await self.get_container(container_id)
        await self._run(container.start)

    async def get_container(self, container_id: str) -> Any:
        """Get a container by ID or name."""
        return await self._run(self._client.containers.get, container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container."""
        container = await self.get_container(container_id)
        await self._run(container.stop, timeout=timeout)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """Remove a container. Missing containers are ignored."""
        try:
            container = await self.get_container(container_id)
            await self._run(container.remove, force=force)
        except docker.errors.NotFound:
            pass

    async def image_exists(self, image: str) -> bool:
        """Check if an image exists locally."""
        try:
            await self._run(self._client.images.get, image)
            return True
        except docker.errors.ImageNotFound:
            return False

    async def pull_image(self, image: str) -> Any:
        """Pull an image."""
        return await self._run(self._client.images.pull, image)

    async def events(self, filters: dict[str, Any] | None = None) -> AsyncIterator[dict[str, Any]]:
        """
        Stream decoded Docker events.

        The underlying generator blocks, so each next() runs in the executor.
        Closing the iterator closes the HTTP stream, which unblocks the thread.
        """
        stream = await self._run(self._client.events, decode=True, filters=filters)
        sentinel = object()
        try:
            while True:
                event = await self._run(next, stream, sentinel)
                if event is sentinel:
                    return
                yield event
        finally:
            stream.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()
