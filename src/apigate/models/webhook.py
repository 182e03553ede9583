"""Pydantic models for webhook subscriptions, envelopes and delivery attempts."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WebhookSubscription(BaseModel):
    """A registered delivery target, consumed read-only by the dispatcher."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    workspace_id: str
    url: str
    secret: str
    event_types: list[str] = Field(default_factory=list)
    active: bool = True
    needs_attention: bool = False
    attention_reason: str | None = None

    def matches(self, workspace_id: str, event_type: str) -> bool:
        return (
            self.active
            and self.workspace_id == workspace_id
            and event_type in self.event_types
        )


class WebhookEnvelope(BaseModel):
    """Flat envelope transmitted to subscribers."""

    model_config = ConfigDict(extra="forbid")

    event: str
    data: dict[str, Any]
    timestamp: datetime


class DeliveryAttempt(BaseModel):
    """One delivery attempt to one subscription. Append-only."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    subscription_id: str
    event_id: str
    event_type: str
    attempt: int = Field(..., ge=1)
    status_code: int | None = None
    error: str | None = None
    succeeded: bool
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryResult(BaseModel):
    """Terminal outcome of delivering one event to one subscription."""

    subscription_id: str
    event_id: str
    succeeded: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None
