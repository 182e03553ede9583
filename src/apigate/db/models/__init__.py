"""SQLAlchemy ORM models - import all to register with Base.metadata."""

from apigate.db.models.client import ClientRow
from apigate.db.models.usage import UsageRecordRow
from apigate.db.models.webhook import DeliveryAttemptRow, WebhookSubscriptionRow

__all__ = [
    "ClientRow",
    "UsageRecordRow",
    "WebhookSubscriptionRow",
    "DeliveryAttemptRow",
]
