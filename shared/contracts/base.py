from datetime import UTC, datetime
from typing import Literal
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class QueueMeta(BaseModel):
    """Metadata for all queue messages."""

    version: Literal["1"] = "1"
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
