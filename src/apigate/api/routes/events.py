"""Event publication: authenticated clients emit events to their workspace's webhooks."""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from apigate.dependencies import CurrentClient, Dispatcher
from apigate.errors.exceptions import AuthorizationError

router = APIRouter(tags=["Events"])


class PublishEventRequest(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_]+(\.[a-z0-9_]+)+$")
    data: dict[str, Any] = Field(default_factory=dict)


@router.post("/events", status_code=202)
async def publish_event(
    body: PublishEventRequest,
    client: CurrentClient,
    dispatcher: Dispatcher,
) -> dict:
    """Queue an event for webhook delivery. Returns before any delivery happens."""
    if not client.has_scope(body.event_type):
        raise AuthorizationError(f"Client may not publish '{body.event_type}'")

    event_id = await dispatcher.dispatch(client.workspace, body.event_type, body.data)
    return {
        "event_id": event_id,
        "event_type": body.event_type,
        "workspace_id": client.workspace,
        "status": "queued",
    }
