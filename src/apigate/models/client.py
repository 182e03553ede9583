"""Pydantic model for the Client entity."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

ALL_SCOPES = "*"


class Client(BaseModel):
    """An API consumer, as seen by the gateway core.

    Carries the hashed credential only; raw keys are never loaded.
    """

    model_config = ConfigDict(from_attributes=True)

    client_id: str
    name: str
    key_hash: str
    is_active: bool = True
    rate_limit: int = Field(..., ge=0)
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    workspace_id: str | None = None

    @property
    def workspace(self) -> str:
        return self.workspace_id or self.client_id

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        # SQLite drops tzinfo on round-trip
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    def has_scope(self, event_type: str) -> bool:
        return ALL_SCOPES in self.scopes or event_type in self.scopes
