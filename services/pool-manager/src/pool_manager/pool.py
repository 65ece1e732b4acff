"""Warm pool sizing and bulk stop.

`PoolController.run_once` is a convergent control loop: it may overlap with
itself, with claims and with reconciliation. Each worker mutation is guarded
on its own, so a stale count only costs a small overshoot the next run fixes.
"""

import asyncio
from datetime import timedelta
import uuid

import structlog

from shared.contracts.base import utcnow
from shared.contracts.dto.worker import (
    REAPABLE_STATUSES,
    STOPPABLE_STATUSES,
    WARM_STATUSES,
    PoolRunSummary,
    StopAllSummary,
    StopResult,
    WorkerRecord,
    WorkerStatus,
)

from .orchestrator import Orchestrator
from .store import WorkerStore, ttl_from_now

logger = structlog.get_logger()

POOL_SOURCE = "pool-controller"
STOP_ALL_SOURCE = "stop-all-api"


class PoolController:
    def __init__(
        self,
        workers: WorkerStore,
        orchestrator: Orchestrator,
        min_warm_workers: int,
        max_warm_workers: int,
        terminal_ttl_seconds: int = 3600,
        reap_grace_seconds: int = 300,
    ):
        if min_warm_workers > max_warm_workers:
            raise ValueError("min_warm_workers must not exceed max_warm_workers")
        if reap_grace_seconds >= terminal_ttl_seconds:
            raise ValueError("reap_grace_seconds must be below terminal_ttl_seconds")
        self.workers = workers
        self.orchestrator = orchestrator
        self.min_warm_workers = min_warm_workers
        self.max_warm_workers = max_warm_workers
        self.terminal_ttl_seconds = terminal_ttl_seconds
        self.reap_grace_seconds = reap_grace_seconds

    async def run_once(self) -> PoolRunSummary:
        """Start or stop workers so the warm count moves into [min, max]. Never raises.

        Kicked and errored workers whose record has not changed for
        `reap_grace_seconds` are stopped as well, before their record expires
        and the container would be left untracked.
        """
        warm = await self.workers.scan_by_status_set(WARM_STATUSES)
        count = len(warm)
        summary = PoolRunSummary(
            observed=count,
            min_warm_workers=self.min_warm_workers,
            max_warm_workers=self.max_warm_workers,
        )
        await self._reap_stale(summary)

        if count > self.max_warm_workers:
            excess = count - self.max_warm_workers
            # Only idle workers are safe to retire; oldest first
            available = [w for w in warm if w.status == WorkerStatus.AVAILABLE]
            available.sort(key=lambda w: w.created_at)
            victims = available[:excess]
            summary.shortfall = excess - len(victims)
            if summary.shortfall:
                logger.warning(
                    "pool_trim_shortfall",
                    excess=excess,
                    available=len(available),
                    shortfall=summary.shortfall,
                )
            results = await asyncio.gather(
                *(self._retire(w, reason="pool above maximum") for w in victims),
                return_exceptions=True,
            )
            for worker, result in zip(victims, results, strict=True):
                if isinstance(result, Exception):
                    summary.failed += 1
                    logger.error("pool_trim_failed", worker_id=worker.id, error=str(result))
                elif result:
                    summary.stopped += 1

        elif count < self.min_warm_workers:
            deficit = self.min_warm_workers - count
            results = await asyncio.gather(
                *(self._provision() for _ in range(deficit)), return_exceptions=True
            )
            for result in results:
                if isinstance(result, Exception):
                    summary.failed += 1
                    logger.error("pool_start_failed", error=str(result))
                else:
                    summary.started += 1

        logger.info("pool_run_completed", **summary.model_dump())
        return summary

    async def _reap_stale(self, summary: PoolRunSummary) -> None:
        cutoff = utcnow() - timedelta(seconds=self.reap_grace_seconds)
        candidates = await self.workers.scan_by_status_set(REAPABLE_STATUSES)
        stale = [w for w in candidates if w.updated_at <= cutoff]
        if not stale:
            return

        results = await asyncio.gather(
            *(self._retire(w, reason=f"{w.status.value.lower()} too long") for w in stale),
            return_exceptions=True,
        )
        for worker, result in zip(stale, results, strict=True):
            if isinstance(result, Exception):
                summary.failed += 1
                logger.error("pool_reap_failed", worker_id=worker.id, error=str(result))
            elif result:
                summary.reaped += 1

    async def _provision(self) -> WorkerRecord:
        worker_id = str(uuid.uuid4())
        created: list[WorkerRecord] = []

        async def track(task_id: str) -> None:
            # Recorded before the container starts so its start event finds the record
            record = WorkerRecord(
                id=worker_id,
                status=WorkerStatus.PROVISIONING,
                task_id=task_id,
                last_update_source=POOL_SOURCE,
            )
            created.append(await self.workers.create(record))

        try:
            await self.orchestrator.start_worker(worker_id, on_created=track)
        except Exception as e:
            if created:
                await self.workers.update_if(
                    worker_id,
                    expected={"status": WorkerStatus.PROVISIONING},
                    set_fields={
                        "status": WorkerStatus.STOPPED,
                        "ttl": ttl_from_now(self.terminal_ttl_seconds),
                        "last_error": f"launch failed: {e}",
                    },
                    source=POOL_SOURCE,
                )
            raise
        return created[0]

    async def _retire(self, worker: WorkerRecord, reason: str) -> bool:
        """Stop one worker still in the status it was selected in.

        Returns False when its status changed in the meantime.
        """
        marked = await self.workers.update_if(
            worker.id,
            expected={"status": worker.status},
            set_fields={"status": WorkerStatus.DEPROVISIONING},
            source=POOL_SOURCE,
        )
        if not marked.applied:
            logger.info("pool_retire_skipped", worker_id=worker.id, reason=marked.reason)
            return False

        if worker.task_id:
            try:
                await self.orchestrator.stop_worker(worker.task_id, reason=reason)
            except Exception:
                # Container is still up; hand the record back as it was
                await self.workers.update_if(
                    worker.id,
                    expected={"status": WorkerStatus.DEPROVISIONING},
                    set_fields={"status": worker.status},
                    source=POOL_SOURCE,
                )
                raise
        await self.workers.update(
            worker.id,
            set_fields={
                "status": WorkerStatus.STOPPED,
                "ttl": ttl_from_now(self.terminal_ttl_seconds),
            },
            remove_fields=("assigned_stage_arn", "stage_endpoints", "asset_name"),
            source=POOL_SOURCE,
        )
        logger.info(
            "pool_worker_retired",
            worker_id=worker.id,
            task_id=worker.task_id,
            previous_status=worker.status.value,
            reason=reason,
        )
        return True

    async def stop_all(self) -> StopAllSummary:
        """Stop every live worker. Failures are reported per worker, never raised."""
        targets = await self.workers.scan_by_status_set(STOPPABLE_STATUSES)
        results = await asyncio.gather(*(self._stop(w) for w in targets))

        successful = sum(1 for r in results if r.success)
        summary = StopAllSummary(
            total_found=len(targets),
            successful_stops=successful,
            failed_stops=len(results) - successful,
            results=list(results),
        )
        logger.info(
            "stop_all_completed",
            total_found=summary.total_found,
            successful_stops=summary.successful_stops,
            failed_stops=summary.failed_stops,
        )
        return summary

    async def _stop(self, worker: WorkerRecord) -> StopResult:
        try:
            if worker.task_id:
                await self.orchestrator.stop_worker(worker.task_id, reason="stop all requested")
            await self.workers.update(
                worker.id,
                set_fields={
                    "status": WorkerStatus.STOPPED,
                    "ttl": ttl_from_now(self.terminal_ttl_seconds),
                },
                remove_fields=("assigned_stage_arn", "stage_endpoints", "asset_name"),
                source=STOP_ALL_SOURCE,
            )
        except Exception as e:
            logger.error(
                "worker_stop_failed",
                worker_id=worker.id,
                task_id=worker.task_id,
                error=str(e),
            )
            return StopResult(
                worker_id=worker.id, task_id=worker.task_id, success=False, error=str(e)
            )
        return StopResult(worker_id=worker.id, task_id=worker.task_id, success=True)
