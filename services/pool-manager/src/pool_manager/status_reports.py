"""Consume the workers' own status reports from the worker status stream."""

import asyncio

from pydantic import ValidationError
import structlog

from shared.contracts.dto.worker import WorkerRecord, WorkerStatus
from shared.contracts.queues.worker_lifecycle import WORKER_STATUS_STREAM, WorkerStatusReport
from shared.redis.client import RedisStreamClient, StreamMessage

from .store import WorkerStore

logger = structlog.get_logger()

WORKER_REPORT_SOURCE = "vp-server"

# A report never revives a worker the pool already retired
_RETIRED_STATUSES = frozenset({WorkerStatus.STOPPED, WorkerStatus.DEPROVISIONING})


class StatusReportConsumer:
    def __init__(
        self,
        streams: RedisStreamClient,
        workers: WorkerStore,
        group: str = "pool_manager",
        consumer: str = "pool_manager_1",
        stream: str = WORKER_STATUS_STREAM,
    ):
        self.streams = streams
        self.workers = workers
        self.group = group
        self.consumer = consumer
        self.stream = stream

    async def run(self) -> None:
        """Run consumer loop."""
        await self.streams.ensure_consumer_group(self.stream, self.group)
        logger.info("status_report_consumer_started", stream=self.stream)

        while True:
            try:
                messages = await self.streams.read_new(self.stream, self.group, self.consumer)
                for message in messages:
                    await self.process_message(message)
                    await self.streams.ack(self.stream, self.group, message.message_id)
            except asyncio.CancelledError:
                logger.info("status_report_consumer_stopping")
                break
            except Exception as e:
                logger.error("status_report_consumer_error", error=str(e))
                await asyncio.sleep(1)

    async def process_message(self, message: StreamMessage) -> WorkerRecord | None:
        if message.data is None:
            logger.error("invalid_status_report", message_id=message.message_id)
            return None
        try:
            report = WorkerStatusReport.model_validate(message.data)
        except ValidationError as e:
            logger.error("invalid_status_report", message_id=message.message_id, error=str(e))
            return None
        return await self.apply(report)

    async def apply(self, report: WorkerStatusReport) -> WorkerRecord | None:
        """Apply one report. Returns the updated record, None when nothing changed."""
        log = logger.bind(
            worker_id=report.worker_id,
            report_event=report.event,
            correlation_id=report.correlation_id,
        )

        worker = await self.workers.get(report.worker_id)
        if worker is None:
            log.warning("status_report_unknown_worker")
            return None
        if worker.status in _RETIRED_STATUSES:
            log.info("status_report_ignored", status=worker.status.value)
            return None

        if report.event in ("ready", "left"):
            set_fields = {"status": WorkerStatus.AVAILABLE}
            remove_fields = ("assigned_stage_arn", "stage_endpoints", "asset_name", "ttl")
        elif report.event == "joined":
            if worker.status != WorkerStatus.INVITED:
                log.info("status_report_ignored", status=worker.status.value)
                return None
            set_fields = {"status": WorkerStatus.JOINED}
            remove_fields = ()
        else:
            set_fields = {"status": WorkerStatus.ERRORED, "last_error": report.error}
            remove_fields = ("assigned_stage_arn", "stage_endpoints")

        result = await self.workers.update_if(
            worker.id,
            expected={"status": worker.status},
            set_fields=set_fields,
            remove_fields=remove_fields,
            source=WORKER_REPORT_SOURCE,
        )
        if not result.applied:
            log.info("status_report_conflict", reason=result.reason)
            return None

        log.info("status_report_applied", status=result.record.status.value)
        return result.record
