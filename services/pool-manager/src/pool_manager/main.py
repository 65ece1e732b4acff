"""Pool Manager Service - warm pool of virtual participant workers."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from shared.logging import new_correlation_id, setup_logging
from shared.redis.client import RedisStreamClient

from . import routers
from .change_feed import ChangeFeedConsumer
from .config import settings
from .docker_ops import DockerClientWrapper
from .errors import PoolError
from .events import DockerEventsListener
from .orchestrator import DockerOrchestrator
from .services import build_services
from .status_reports import StatusReportConsumer

logger = structlog.get_logger()


async def run_periodic_task(coro_func, interval: int, name: str):
    """Run a periodic task in an infinite loop."""
    logger.info("periodic_task_started", task=name, interval=interval)
    while True:
        try:
            await coro_func()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("periodic_task_error", task=name, error=str(e))

        await asyncio.sleep(interval)
    logger.info("periodic_task_stopped", task=name)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging(
        service_name=settings.service_name,
        log_format=settings.log_format,
        log_level=settings.log_level,
    )

    streams = RedisStreamClient(settings.redis_url)
    await streams.connect()
    redis = streams.redis
    docker_client = DockerClientWrapper()
    services = build_services(redis, DockerOrchestrator(settings, docker_client), settings)
    app.state.services = services

    tasks: list[asyncio.Task] = []

    if settings.pool_schedule_enabled:
        tasks.append(
            asyncio.create_task(
                run_periodic_task(
                    services.pool.run_once,
                    interval=settings.pool_interval_seconds,
                    name="pool_sizing",
                )
            )
        )

    events_listener = None
    if settings.docker_events_enabled:
        events_listener = DockerEventsListener(docker_client, services.reconciler)
        tasks.append(asyncio.create_task(events_listener.start()))

    status_consumer = StatusReportConsumer(streams, services.workers)
    tasks.append(asyncio.create_task(status_consumer.run()))

    if settings.subscriber_urls:
        change_consumer = ChangeFeedConsumer(
            streams,
            services.notifier,
            retry_delay=settings.notify_retry_delay_seconds,
        )
        tasks.append(asyncio.create_task(change_consumer.run()))
    else:
        logger.info("change_notifier_disabled", reason="no subscriber_urls configured")

    logger.info(
        "pool_manager_started",
        min_warm_workers=settings.min_warm_workers,
        max_warm_workers=settings.max_warm_workers,
        background_tasks=len(tasks),
    )

    yield

    # Shutdown
    logger.info("shutdown_initiated")
    if events_listener:
        events_listener.stop()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    docker_client.close()
    await streams.close()
    logger.info("shutdown_complete")


app = FastAPI(
    title="Virtual Participant Pool Manager",
    description="Warm pool, invitations and lifecycle of virtual participant workers",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(PoolError)
async def pool_error_handler(request: Request, exc: PoolError) -> JSONResponse:
    structlog.get_logger().info(
        "request_rejected", error_name=exc.name, status_code=int(exc.status_code)
    )
    return JSONResponse(
        status_code=int(exc.status_code),
        content={"name": exc.name, "detail": exc.message},
    )


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or new_correlation_id()
    structlog.contextvars.bind_contextvars(
        correlation_id=correlation_id, method=request.method, path=request.url.path
    )

    start = time.time()
    logger = structlog.get_logger()

    try:
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000

        if response.status_code >= 500:  # noqa: PLR2004
            logger.error(
                "http_request_failed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        else:
            logger.info(
                "http_request", status_code=response.status_code, duration_ms=round(duration_ms, 2)
            )

        response.headers["X-Correlation-ID"] = correlation_id
        return response
    except Exception as e:
        duration_ms = (time.time() - start) * 1000
        logger.error(
            "http_request_exception",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round(duration_ms, 2),
            exc_info=True,
        )
        raise
    finally:
        structlog.contextvars.unbind_contextvars("correlation_id", "method", "path")


app.include_router(routers.health.router)
app.include_router(routers.workers.router, prefix="/api")
app.include_router(routers.pool.router, prefix="/api")
app.include_router(routers.stages.router, prefix="/api")
