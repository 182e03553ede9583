"""Declarative base for apigate tables."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    # Every datetime column stores an aware UTC timestamp
    type_annotation_map = {datetime: DateTime(timezone=True)}


class TimestampMixin:
    """Row bookkeeping for tables that change after insert (clients, subscriptions)."""

    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow
    )
