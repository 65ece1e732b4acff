import asyncio

from pydantic import ValidationError
import structlog

from shared.contracts.events import WORKER_CHANGES_STREAM, RecordChange
from shared.redis.client import RedisStreamClient, StreamMessage

from .notifier import ChangeNotifier

logger = structlog.get_logger()


class ChangeFeedConsumer:
    """
    Reads the worker change feed in batches and hands them to the notifier.

    Entries whose delivery failed are left unacked. They stay in this
    consumer's pending list and are read again, before any new entry, after
    `retry_delay` seconds.
    """

    def __init__(
        self,
        streams: RedisStreamClient,
        notifier: ChangeNotifier,
        group: str = "change_notifier",
        consumer: str = "change_notifier_1",
        stream: str = WORKER_CHANGES_STREAM,
        batch_size: int = 50,
        retry_delay: float = 5.0,
        block_ms: int = 5000,
    ):
        self.streams = streams
        self.notifier = notifier
        self.group = group
        self.consumer = consumer
        self.stream = stream
        self.batch_size = batch_size
        self.retry_delay = retry_delay
        self.block_ms = block_ms

    async def run(self) -> None:
        await self.streams.ensure_consumer_group(self.stream, self.group)
        logger.info("change_feed_consumer_started", stream=self.stream, group=self.group)

        while True:
            try:
                failed = await self.run_once()
                if failed:
                    await asyncio.sleep(self.retry_delay)
            except asyncio.CancelledError:
                logger.info("change_feed_consumer_stopping")
                break
            except Exception as e:
                logger.error("change_feed_consumer_error", error=str(e))
                await asyncio.sleep(1)

    async def run_once(self) -> list[str]:
        """Process one batch. Returns the ids left pending for redelivery."""
        messages = await self.streams.read_pending(
            self.stream, self.group, self.consumer, count=self.batch_size
        )
        if not messages:
            messages = await self.streams.read_new(
                self.stream,
                self.group,
                self.consumer,
                count=self.batch_size,
                block_ms=self.block_ms,
            )
        if not messages:
            return []

        changes = [c for c in (self._parse(m) for m in messages) if c is not None]
        failed = set(await self.notifier.process_batch(changes))

        done = [m.message_id for m in messages if m.message_id not in failed]
        await self.streams.ack(self.stream, self.group, *done)
        if failed:
            logger.warning("change_feed_redelivery_pending", failed_items=len(failed))
        return sorted(failed)

    def _parse(self, message: StreamMessage) -> RecordChange | None:
        if message.data is None:
            logger.error("invalid_change_entry", message_id=message.message_id)
            return None
        try:
            return RecordChange.model_validate({"item_id": message.message_id, **message.data})
        except ValidationError as e:
            logger.error("invalid_change_entry", message_id=message.message_id, error=str(e))
            return None
