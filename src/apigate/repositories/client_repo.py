"""Repository and credential store adapter for API clients."""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apigate.db.models.client import ClientRow
from apigate.errors.exceptions import CredentialStoreError
from apigate.models.client import Client
from apigate.repositories.base import BaseRepository
from apigate.services.credentials import generate_api_key, hash_api_key
from apigate.services.id_generator import generate_id

logger = logging.getLogger(__name__)


class ClientRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, ClientRow)

    async def get(self, client_id: str) -> ClientRow | None:
        return await self.get_by_id("client_id", client_id)

    async def get_by_hash(self, key_hash: str) -> ClientRow | None:
        # Inactive rows are returned too; the authenticator decides.
        stmt = select(ClientRow).where(ClientRow.key_hash == key_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_client(
        self,
        name: str,
        rate_limit: int,
        scopes: list[str] | None = None,
        workspace_id: str | None = None,
        expires_at=None,
    ) -> tuple[ClientRow, str]:
        """Create a client and return it with its one-time raw key."""
        raw_key = generate_api_key()
        row = await self.create(
            client_id=generate_id("cli_"),
            name=name,
            key_hash=hash_api_key(raw_key),
            is_active=True,
            rate_limit=rate_limit,
            scopes=scopes or [],
            workspace_id=workspace_id,
            expires_at=expires_at,
        )
        return row, raw_key

    async def deactivate(self, client: ClientRow) -> None:
        client.is_active = False
        await self.session.flush()

    async def set_rate_limit(self, client: ClientRow, rate_limit: int) -> None:
        client.rate_limit = rate_limit
        await self.session.flush()


class SqlCredentialStore:
    """CredentialStore backed by the clients table.

    Opens a short-lived session per lookup so concurrent requests never share
    a session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_hashed_key(self, key_hash: str) -> Client | None:
        try:
            async with self._session_factory() as session:
                row = await ClientRepository(session).get_by_hash(key_hash)
                return Client.model_validate(row) if row else None
        # Driver-level connect failures (asyncpg raises OSError) are not
        # wrapped by SQLAlchemy
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Credential store lookup failed: %s", exc)
            raise CredentialStoreError(str(exc)) from exc
