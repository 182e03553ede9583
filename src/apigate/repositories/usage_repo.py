"""Usage log persistence."""

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apigate.db.models.usage import UsageRecordRow
from apigate.models.usage import UsageRecord
from apigate.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class UsageRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, UsageRecordRow)

    async def add_many(self, records: Sequence[UsageRecord]) -> None:
        self.session.add_all(
            UsageRecordRow(**record.model_dump()) for record in records
        )
        await self.session.flush()

    async def list_for_client(self, client_id: str, limit: int = 100) -> list[UsageRecordRow]:
        stmt = (
            select(UsageRecordRow)
            .where(UsageRecordRow.client_id == client_id)
            .order_by(UsageRecordRow.recorded_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class SqlUsageSink:
    """UsageSink writing batches of records in one transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def enqueue_batch(self, records: Sequence[UsageRecord]) -> None:
        async with self._session_factory() as session:
            await UsageRepository(session).add_many(records)
            await session.commit()
        logger.debug("Persisted %d usage records", len(records))
