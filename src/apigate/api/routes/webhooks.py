"""Read-only view of webhook delivery attempts."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from apigate.dependencies import CurrentClient, get_db
from apigate.errors.exceptions import NotFoundError
from apigate.repositories.webhook_repo import (
    DeliveryAttemptRepository,
    WebhookSubscriptionRepository,
)

router = APIRouter(tags=["Webhooks"])


def _attempt_to_dict(row) -> dict:
    return {
        "event_id": row.event_id,
        "event_type": row.event_type,
        "attempt": row.attempt,
        "status_code": row.status_code,
        "error": row.error,
        "succeeded": row.succeeded,
        "attempted_at": row.attempted_at.isoformat(),
    }


@router.get("/webhooks/{subscription_id}/deliveries", status_code=200)
async def list_deliveries(
    subscription_id: str,
    client: CurrentClient,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List recent delivery attempts for a subscription in the caller's workspace."""
    sub = await WebhookSubscriptionRepository(db).get(subscription_id)
    # Other workspaces' subscriptions are reported as missing
    if sub is None or sub.workspace_id != client.workspace:
        raise NotFoundError("Webhook subscription", subscription_id)

    rows = await DeliveryAttemptRepository(db).list_for_subscription(subscription_id, limit)
    return {
        "subscription_id": sub.subscription_id,
        "active": sub.active,
        "needs_attention": sub.needs_attention,
        "attention_reason": sub.attention_reason,
        "attempts": [_attempt_to_dict(r) for r in rows],
    }
