"""Forward meaningful worker-record changes to subscribers.

Only fields observers act on count as a change. Bookkeeping fields such as
updated_at and last_update_source never trigger a notification on their own.
"""

import asyncio
from collections.abc import Iterable, Sequence
from typing import Protocol

import httpx
import structlog

from shared.contracts.dto.worker import WorkerRecord
from shared.contracts.events import RecordChange

logger = structlog.get_logger()

MEANINGFUL_FIELDS = (
    "status",
    "assigned_stage_arn",
    "running",
    "task_id",
    "stage_endpoints",
)


def is_meaningful_change(old: WorkerRecord | None, new: WorkerRecord) -> bool:
    if old is None:
        return True
    return any(getattr(old, field) != getattr(new, field) for field in MEANINGFUL_FIELDS)


class NotificationSink(Protocol):
    async def deliver(self, record: WorkerRecord) -> None: ...


class HttpWebhookSink:
    """POSTs the full worker record as JSON to a subscriber URL."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None):
        self.url = url
        self._client = client

    async def deliver(self, record: WorkerRecord) -> None:
        payload = record.model_dump(mode="json")
        if self._client is not None:
            resp = await self._client.post(self.url, json=payload)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(self.url, json=payload)
        resp.raise_for_status()


class ChangeNotifier:
    """Fan out a batch of changes, reporting the item ids that must be redelivered."""

    def __init__(self, sinks: Sequence[NotificationSink], timeout: float = 10.0):
        self.sinks = list(sinks)
        self.timeout = timeout

    async def process_batch(self, changes: Iterable[RecordChange]) -> list[str]:
        # Latest state per worker wins; all its item ids share the outcome
        latest: dict[str, WorkerRecord] = {}
        item_ids: dict[str, list[str]] = {}
        for change in changes:
            if not is_meaningful_change(change.old, change.new):
                continue
            latest[change.worker_id] = change.new
            item_ids.setdefault(change.worker_id, []).append(change.item_id)

        if not latest or not self.sinks:
            return []

        worker_ids = list(latest)
        results = await asyncio.gather(
            *(self._deliver(latest[w]) for w in worker_ids), return_exceptions=True
        )

        failed: list[str] = []
        failed_workers = 0
        for worker_id, result in zip(worker_ids, results, strict=True):
            if isinstance(result, BaseException):
                failed_workers += 1
                logger.error(
                    "change_notification_failed",
                    worker_id=worker_id,
                    error=str(result) or type(result).__name__,
                )
                failed.extend(item_ids[worker_id])

        logger.info(
            "change_batch_processed",
            notified=len(worker_ids) - failed_workers,
            failed_items=len(failed),
        )
        return failed

    async def _deliver(self, record: WorkerRecord) -> None:
        # Every sink gets the record even when another fails; a redelivery goes
        # to all sinks again, so sinks must tolerate duplicates
        results = await asyncio.gather(
            *(asyncio.wait_for(sink.deliver(record), timeout=self.timeout) for sink in self.sinks),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
