from dataclasses import dataclass
import json
import os
from typing import Any

from pydantic import BaseModel
import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class StreamMessage:
    """A message from a Redis Stream."""

    message_id: str
    data: dict[str, Any] | None  # None when the payload was not valid JSON


class RedisStreamClient:
    """Client for Redis Streams-based message passing.

    Consumers ack explicitly: a message that is read but not acked stays in
    the group's pending list and is returned again by ``read_pending``.
    """

    def __init__(self, redis_url: str | None = None):
        """Initialize Redis client.

        Args:
            redis_url: Redis connection URL. Falls back to REDIS_URL env var.
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        if not self.redis_url:
            raise RuntimeError(
                "Redis URL not provided. Pass redis_url argument or set REDIS_URL env var."
            )
        self._redis: redis.Redis | None = None

    @classmethod
    def from_client(cls, client: redis.Redis) -> "RedisStreamClient":
        """Wrap an already connected client (tests use fakeredis here)."""
        instance = cls(redis_url="redis://preconnected")
        instance._redis = client
        return instance

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("redis_connected", redis_url=self.redis_url)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_connection_closed")

    @property
    def redis(self) -> redis.Redis:
        """Get Redis client, ensuring connection."""
        if self._redis is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._redis

    async def publish(self, stream: str, data: dict[str, Any]) -> str:
        """Publish a dict to a Redis Stream."""
        message_id = await self.redis.xadd(stream, {"data": json.dumps(data)})
        logger.debug("message_published", stream=stream, message_id=message_id)
        return message_id

    async def publish_message(self, stream: str, message: BaseModel) -> str:
        """Publish a Pydantic DTO to a Redis Stream."""
        return await self.publish(stream, message.model_dump(mode="json"))

    async def ensure_consumer_group(self, stream: str, group: str) -> None:
        """Ensure a consumer group exists for the stream."""
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("consumer_group_created", stream=stream, group=group)
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.debug("consumer_group_exists", stream=stream, group=group)
            else:
                raise

    async def read_new(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int | None = 5000,
    ) -> list[StreamMessage]:
        """Read messages never delivered to the group."""
        return await self._read_group(stream, group, consumer, ">", count, block_ms)

    async def read_pending(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
    ) -> list[StreamMessage]:
        """Re-read messages delivered to this consumer but not yet acked."""
        return await self._read_group(stream, group, consumer, "0", count, None)

    async def ack(self, stream: str, group: str, *message_ids: str) -> None:
        if not message_ids:
            return
        await self.redis.xack(stream, group, *message_ids)
        logger.debug("messages_acked", stream=stream, count=len(message_ids))

    async def _read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        start_id: str,
        count: int,
        block_ms: int | None,
    ) -> list[StreamMessage]:
        response = await self.redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: start_id},
            count=count,
            block=block_ms,
        )
        result: list[StreamMessage] = []
        for _stream_name, stream_messages in response or []:
            for message_id, fields in stream_messages:
                result.append(StreamMessage(message_id=message_id, data=_decode(fields)))
        return result


def _decode(fields: dict[str, str] | None) -> dict[str, Any] | None:
    # Pending entries that were trimmed from the stream come back as None
    if not fields:
        return None
    raw = fields.get("data")
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
