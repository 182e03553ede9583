"""Pydantic model for UsageRecord facts."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class UsageRecord(BaseModel):
    """One admitted request. Immutable once created."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    client_id: str
    endpoint: str
    method: str
    status_code: int
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
