from datetime import datetime

from pydantic import BaseModel, Field

from shared.contracts.base import utcnow


class StageRecord(BaseModel):
    """A real-time stage session a worker can be invited to."""

    id: str
    stage_arn: str
    stage_endpoints: dict[str, str] = Field(default_factory=dict)
    host_participant_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StageUpsert(BaseModel):
    """Register or refresh a stage record."""

    stage_arn: str = Field(..., min_length=1)
    stage_endpoints: dict[str, str] = Field(default_factory=dict)
    host_participant_id: str | None = None


class InvitationRequest(BaseModel):
    stage_id: str = Field(..., min_length=1)
    asset_name: str | None = Field(default=None, min_length=1)


class KickRequest(BaseModel):
    stage_id: str = Field(..., min_length=1)
