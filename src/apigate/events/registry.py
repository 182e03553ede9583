"""Webhook registry and delivery log contracts, with in-memory implementations."""

from typing import Protocol

from apigate.models.webhook import DeliveryAttempt, WebhookSubscription


class WebhookRegistry(Protocol):
    async def find_active_subscriptions(
        self, workspace_id: str, event_type: str
    ) -> list[WebhookSubscription]: ...

    async def mark_needs_attention(self, subscription_id: str, reason: str) -> None: ...


class DeliveryLog(Protocol):
    async def append(self, attempt: DeliveryAttempt) -> None: ...


class InMemoryWebhookRegistry:
    """In-memory registry for webhook subscriptions.

    Used in tests and by embedders that manage subscriptions themselves; the
    service wires ``SqlWebhookRegistry``.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, WebhookSubscription] = {}

    def register(self, subscription: WebhookSubscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription

    def unregister(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        return self._subscriptions.get(subscription_id)

    def list_all(self) -> list[WebhookSubscription]:
        return list(self._subscriptions.values())

    async def find_active_subscriptions(
        self, workspace_id: str, event_type: str
    ) -> list[WebhookSubscription]:
        return [
            s for s in self._subscriptions.values() if s.matches(workspace_id, event_type)
        ]

    async def mark_needs_attention(self, subscription_id: str, reason: str) -> None:
        sub = self._subscriptions.get(subscription_id)
        if sub is not None:
            self._subscriptions[subscription_id] = sub.model_copy(
                update={"needs_attention": True, "attention_reason": reason}
            )


class InMemoryDeliveryLog:
    """Append-only list of attempts."""

    def __init__(self) -> None:
        self.attempts: list[DeliveryAttempt] = []

    async def append(self, attempt: DeliveryAttempt) -> None:
        self.attempts.append(attempt)

    def for_subscription(self, subscription_id: str) -> list[DeliveryAttempt]:
        return [a for a in self.attempts if a.subscription_id == subscription_id]
