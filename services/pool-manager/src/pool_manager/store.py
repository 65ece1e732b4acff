"""Redis-backed worker and stage records.

Layout:
    vp:worker:{id}            JSON WorkerRecord (EXPIREAT = ttl when set)
    vp:workers                set of all worker ids
    vp:idx:status:{status}    set of worker ids
    vp:idx:stage:{stage_arn}  set of worker ids (non-sentinel stages only)
    vp:idx:task:{task_id}     set of worker ids (non-empty task ids only)
    vp:worker:changes         change feed stream, one entry per mutation
    vp:stage:{id}             JSON StageRecord
    vp:stage-arn:{arn}        stage id
    vp:stages                 set of all stage ids

Every mutation of a worker is a WATCH/MULTI/EXEC transaction, so index
maintenance and the change-feed entry commit atomically with the record.
Expired records leave stale ids in the index sets; readers prune them.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
import json
import time
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError
import structlog

from shared.contracts.base import utcnow
from shared.contracts.dto.stage import StageRecord
from shared.contracts.dto.worker import (
    STAGE_HOLDING_STATUSES,
    UNASSIGNED,
    WorkerRecord,
    WorkerStatus,
)
from shared.contracts.events import WORKER_CHANGES_STREAM

from .errors import AlreadyExists, ConditionFailed

logger = structlog.get_logger()

ALL_WORKERS_KEY = "vp:workers"
ALL_STAGES_KEY = "vp:stages"
MAX_WATCH_ATTEMPTS = 10

_PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at"})


class WorkerIndex(str, Enum):
    STATUS = "status"
    STAGE = "stage"
    TASK = "task"


@dataclass
class ConditionalWrite:
    """Tagged result of `WorkerStore.update_if`."""

    applied: bool
    record: WorkerRecord | None = None
    reason: str | None = None


def worker_key(worker_id: str) -> str:
    return f"vp:worker:{worker_id}"


def index_key(index: WorkerIndex, value: str) -> str:
    return f"vp:idx:{index.value}:{value}"


def ttl_from_now(seconds: int) -> int:
    """Epoch-seconds expiry for terminal records."""
    return int(time.time()) + seconds


def _index_value(record: WorkerRecord, index: WorkerIndex) -> str:
    if index is WorkerIndex.STATUS:
        return record.status.value
    if index is WorkerIndex.STAGE:
        return record.assigned_stage_arn
    return record.task_id


def _index_entries(record: WorkerRecord | None) -> set[tuple[WorkerIndex, str]]:
    if record is None:
        return set()
    entries = {(WorkerIndex.STATUS, record.status.value)}
    if record.is_assigned:
        entries.add((WorkerIndex.STAGE, record.assigned_stage_arn))
    if record.task_id:
        entries.add((WorkerIndex.TASK, record.task_id))
    return entries


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _check_condition(current: WorkerRecord, condition: Mapping[str, Any] | None) -> None:
    for field, expected in (condition or {}).items():
        actual = getattr(current, field)
        if _plain(actual) != _plain(expected):
            raise ConditionFailed(
                current.id, f"{field} is {_plain(actual)!r}, expected {_plain(expected)!r}"
            )


def _apply(
    current: WorkerRecord,
    set_fields: Mapping[str, Any],
    remove_fields: Iterable[str],
) -> WorkerRecord:
    data = current.model_dump()
    for field in remove_fields:
        data[field] = WorkerRecord.model_fields[field].get_default(call_default_factory=True)
    data.update(set_fields)
    data["updated_at"] = utcnow()

    if current.task_id and data["task_id"] != current.task_id:
        raise ValueError(f"task_id of worker {current.id} is immutable once set")

    updated = WorkerRecord.model_validate(data)
    if updated.is_assigned and updated.status not in STAGE_HOLDING_STATUSES:
        raise ValueError(
            f"worker {current.id} cannot hold stage {updated.assigned_stage_arn} "
            f"in status {updated.status.value}"
        )
    return updated


def _validate_field_names(names: Iterable[str]) -> None:
    for name in names:
        if name not in WorkerRecord.model_fields:
            raise ValueError(f"Unknown worker field: {name}")
        if name in _PROTECTED_FIELDS:
            raise ValueError(f"Worker field {name} cannot be updated")


class WorkerStore:
    """Worker records with secondary indexes and conditional updates."""

    def __init__(
        self,
        redis: Redis,
        changes_stream: str = WORKER_CHANGES_STREAM,
        changes_maxlen: int = 10_000,
    ):
        self.redis = redis
        self.changes_stream = changes_stream
        self.changes_maxlen = changes_maxlen

    async def get(self, worker_id: str) -> WorkerRecord | None:
        raw = await self.redis.get(worker_key(worker_id))
        if raw is None:
            return None
        return WorkerRecord.model_validate_json(raw)

    async def query_by_index(
        self,
        index: WorkerIndex | str,
        value: str,
        limit: int | None = None,
    ) -> list[WorkerRecord]:
        """Records whose indexed field equals value, oldest first."""
        index = WorkerIndex(index)
        key = index_key(index, value)
        ids = await self.redis.smembers(key)
        records = await self._load(ids, prune_from=[key])
        matching = [r for r in records if _index_value(r, index) == value]
        return matching[:limit] if limit is not None else matching

    async def scan_by_status_set(self, statuses: Iterable[WorkerStatus]) -> list[WorkerRecord]:
        wanted = {WorkerStatus(s) for s in statuses}
        if not wanted:
            return []
        keys = [index_key(WorkerIndex.STATUS, s.value) for s in wanted]
        ids = await self.redis.sunion(keys)
        records = await self._load(ids, prune_from=keys)
        return [r for r in records if r.status in wanted]

    async def list_all(self) -> list[WorkerRecord]:
        ids = await self.redis.smembers(ALL_WORKERS_KEY)
        return await self._load(ids, prune_from=[])

    async def create(self, record: WorkerRecord) -> WorkerRecord:
        key = worker_key(record.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            for _attempt in range(MAX_WATCH_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    if await pipe.exists(key):
                        raise AlreadyExists(record.id)
                    pipe.multi()
                    self._queue_write(pipe, None, record)
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug("worker_create_contended", worker_id=record.id)
                    continue
            else:
                raise ConditionFailed(record.id, "too many concurrent writers")

        logger.info(
            "worker_record_created",
            worker_id=record.id,
            status=record.status.value,
            task_id=record.task_id,
            source=record.last_update_source,
        )
        return record

    async def update(
        self,
        worker_id: str,
        set_fields: Mapping[str, Any] | None = None,
        remove_fields: Iterable[str] = (),
        condition: Mapping[str, Any] | None = None,
        source: str | None = None,
    ) -> WorkerRecord:
        """Apply a partial update, optionally guarded by expected field values.

        Raises:
            ConditionFailed: the record does not exist, `condition` does not
                hold, or the update would give a stage a second worker.
        """
        set_fields = dict(set_fields or {})
        remove_fields = list(remove_fields)
        if source is not None:
            set_fields["last_update_source"] = source
        _validate_field_names([*set_fields, *remove_fields])

        key = worker_key(worker_id)
        watch_keys = [key]
        stage_key = None
        new_stage = set_fields.get("assigned_stage_arn")
        if new_stage and new_stage != UNASSIGNED:
            stage_key = index_key(WorkerIndex.STAGE, new_stage)
            watch_keys.append(stage_key)

        async with self.redis.pipeline(transaction=True) as pipe:
            for _attempt in range(MAX_WATCH_ATTEMPTS):
                try:
                    await pipe.watch(*watch_keys)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise ConditionFailed(worker_id, "record does not exist")
                    current = WorkerRecord.model_validate_json(raw)
                    _check_condition(current, condition)
                    if stage_key is not None:
                        await self._check_stage_free(pipe, stage_key, worker_id, new_stage)

                    updated = _apply(current, set_fields, remove_fields)
                    pipe.multi()
                    self._queue_write(pipe, current, updated)
                    await pipe.execute()
                    return updated
                except WatchError:
                    # Someone else wrote first; re-evaluate against fresh state
                    logger.debug("worker_update_contended", worker_id=worker_id)
                    continue

        raise ConditionFailed(worker_id, "too many concurrent writers")

    async def update_if(
        self,
        worker_id: str,
        expected: Mapping[str, Any],
        set_fields: Mapping[str, Any],
        remove_fields: Iterable[str] = (),
        source: str | None = None,
    ) -> ConditionalWrite:
        """Compare-and-set. Returns a conflict result instead of raising."""
        try:
            record = await self.update(
                worker_id,
                set_fields=set_fields,
                remove_fields=remove_fields,
                condition=expected,
                source=source,
            )
        except ConditionFailed as e:
            return ConditionalWrite(applied=False, reason=e.reason)
        return ConditionalWrite(applied=True, record=record)

    async def _check_stage_free(self, pipe, stage_key: str, worker_id: str, stage_arn: str) -> None:
        holders = await pipe.smembers(stage_key)
        for holder in holders:
            if holder != worker_id and await pipe.exists(worker_key(holder)):
                raise ConditionFailed(worker_id, f"stage {stage_arn} is held by worker {holder}")

    def _queue_write(self, pipe, old: WorkerRecord | None, new: WorkerRecord) -> None:
        key = worker_key(new.id)
        pipe.set(key, new.model_dump_json())
        if new.ttl is not None:
            pipe.expireat(key, new.ttl)

        old_entries = _index_entries(old)
        new_entries = _index_entries(new)
        for index, value in old_entries - new_entries:
            pipe.srem(index_key(index, value), new.id)
        for index, value in new_entries - old_entries:
            pipe.sadd(index_key(index, value), new.id)
        pipe.sadd(ALL_WORKERS_KEY, new.id)

        change = {
            "worker_id": new.id,
            "old": old.model_dump(mode="json") if old else None,
            "new": new.model_dump(mode="json"),
        }
        pipe.xadd(
            self.changes_stream,
            {"data": json.dumps(change)},
            maxlen=self.changes_maxlen,
            approximate=True,
        )

    async def _load(self, ids: Iterable[str], prune_from: list[str]) -> list[WorkerRecord]:
        ids = sorted(ids)
        if not ids:
            return []
        raws = await self.redis.mget([worker_key(i) for i in ids])

        records = []
        expired = []
        for worker_id, raw in zip(ids, raws, strict=True):
            if raw is None:
                expired.append(worker_id)
            else:
                records.append(WorkerRecord.model_validate_json(raw))

        if expired:
            for key in [*prune_from, ALL_WORKERS_KEY]:
                await self.redis.srem(key, *expired)
            logger.debug("expired_workers_pruned", count=len(expired))

        records.sort(key=lambda r: r.created_at)
        return records


class StageStore:
    """Stage records, keyed by id with a reverse lookup by stage ARN."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, stage_id: str) -> StageRecord | None:
        raw = await self.redis.get(f"vp:stage:{stage_id}")
        if raw is None:
            return None
        return StageRecord.model_validate_json(raw)

    async def get_by_arn(self, stage_arn: str) -> StageRecord | None:
        stage_id = await self.redis.get(f"vp:stage-arn:{stage_arn}")
        if stage_id is None:
            return None
        return await self.get(stage_id)

    async def list_all(self) -> list[StageRecord]:
        ids = sorted(await self.redis.smembers(ALL_STAGES_KEY))
        if not ids:
            return []
        raws = await self.redis.mget([f"vp:stage:{i}" for i in ids])
        return [StageRecord.model_validate_json(raw) for raw in raws if raw is not None]

    async def put(self, record: StageRecord) -> StageRecord:
        existing = await self.get(record.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            if existing and existing.stage_arn != record.stage_arn:
                pipe.delete(f"vp:stage-arn:{existing.stage_arn}")
            pipe.set(f"vp:stage:{record.id}", record.model_dump_json())
            pipe.set(f"vp:stage-arn:{record.stage_arn}", record.id)
            pipe.sadd(ALL_STAGES_KEY, record.id)
            await pipe.execute()
        logger.info("stage_record_saved", stage_id=record.id, stage_arn=record.stage_arn)
        return record

    async def delete(self, stage_id: str) -> bool:
        existing = await self.get(stage_id)
        if existing is None:
            return False
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(f"vp:stage:{stage_id}")
            pipe.delete(f"vp:stage-arn:{existing.stage_arn}")
            pipe.srem(ALL_STAGES_KEY, stage_id)
            await pipe.execute()
        logger.info("stage_record_deleted", stage_id=stage_id)
        return True
