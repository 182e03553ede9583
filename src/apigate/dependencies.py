"""FastAPI dependency injection providers."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request

from apigate.errors.exceptions import (
    AuthenticationError,
    DependencyUnavailableError,
    RateLimitedError,
)
from apigate.events.dispatcher import WebhookDispatcher
from apigate.models.client import Client
from apigate.models.verdict import Admitted, RateLimited, Unauthenticated


async def get_db(request: Request) -> AsyncGenerator:
    """Yield a database session from the app's session factory."""
    session_factory = request.app.state.db_session_factory
    async with session_factory() as session:
        yield session


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


async def get_current_client(request: Request) -> Client:
    """Translate the verdict left by AuthMiddleware into a client or an error.

    Bad, unknown, inactive and expired keys all produce the same 401 body.
    """
    verdict = getattr(request.state, "verdict", None)
    if isinstance(verdict, Admitted):
        return verdict.client
    if isinstance(verdict, RateLimited):
        raise RateLimitedError(retry_after=verdict.retry_after, limit=verdict.limit)
    if isinstance(verdict, Unauthenticated) and verdict.internal_error:
        raise DependencyUnavailableError("credential_store")
    raise AuthenticationError()


# Type aliases for dependency injection
CurrentClient = Annotated[Client, Depends(get_current_client)]
Dispatcher = Annotated[WebhookDispatcher, Depends(get_dispatcher)]
