"""Webhook subscription and delivery attempt persistence."""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apigate.db.models.webhook import DeliveryAttemptRow, WebhookSubscriptionRow
from apigate.models.webhook import DeliveryAttempt, WebhookSubscription
from apigate.repositories.base import BaseRepository
from apigate.services.id_generator import generate_id


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, WebhookSubscriptionRow)

    async def get(self, subscription_id: str) -> WebhookSubscriptionRow | None:
        return await self.get_by_id("subscription_id", subscription_id)

    async def create_subscription(
        self,
        workspace_id: str,
        url: str,
        secret: str,
        event_types: list[str],
        active: bool = True,
    ) -> WebhookSubscriptionRow:
        return await self.create(
            subscription_id=generate_id("whsub_"),
            workspace_id=workspace_id,
            url=url,
            secret=secret,
            event_types=event_types,
            active=active,
        )

    async def list_active_for_workspace(self, workspace_id: str) -> list[WebhookSubscriptionRow]:
        stmt = select(WebhookSubscriptionRow).where(
            WebhookSubscriptionRow.workspace_id == workspace_id,
            WebhookSubscriptionRow.active.is_(True),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_needs_attention(self, subscription_id: str, reason: str) -> bool:
        stmt = (
            update(WebhookSubscriptionRow)
            .where(WebhookSubscriptionRow.subscription_id == subscription_id)
            .values(needs_attention=True, attention_reason=reason)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0


class DeliveryAttemptRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, DeliveryAttemptRow)

    async def list_for_subscription(
        self, subscription_id: str, limit: int = 100
    ) -> list[DeliveryAttemptRow]:
        stmt = (
            select(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.subscription_id == subscription_id)
            .order_by(DeliveryAttemptRow.attempted_at.desc(), DeliveryAttemptRow.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class SqlWebhookRegistry:
    """WebhookRegistry backed by the webhook_subscriptions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_active_subscriptions(
        self, workspace_id: str, event_type: str
    ) -> list[WebhookSubscription]:
        # event_types is a JSON column, so the membership filter runs here
        async with self._session_factory() as session:
            rows = await WebhookSubscriptionRepository(session).list_active_for_workspace(
                workspace_id
            )
        return [
            WebhookSubscription.model_validate(row)
            for row in rows
            if event_type in (row.event_types or [])
        ]

    async def mark_needs_attention(self, subscription_id: str, reason: str) -> None:
        async with self._session_factory() as session:
            await WebhookSubscriptionRepository(session).mark_needs_attention(
                subscription_id, reason
            )
            await session.commit()


class SqlDeliveryLog:
    """DeliveryLog appending one row per attempt."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, attempt: DeliveryAttempt) -> None:
        async with self._session_factory() as session:
            await DeliveryAttemptRepository(session).create(**attempt.model_dump())
            await session.commit()
