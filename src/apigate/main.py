"""FastAPI application factory and lifespan management."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apigate import __version__
from apigate.config import Settings, settings
from apigate.db.engine import create_db_engine, create_session_factory
from apigate.events.dispatcher import WebhookDispatcher
from apigate.logging_config import configure_logging
from apigate.repositories.client_repo import SqlCredentialStore
from apigate.repositories.usage_repo import SqlUsageSink
from apigate.repositories.webhook_repo import SqlDeliveryLog, SqlWebhookRegistry
from apigate.services.authenticator import RequestAuthenticator
from apigate.services.rate_limiter import (
    InMemoryRateCounterStore,
    RateCounterStore,
    RateLimiter,
    RedisRateCounterStore,
)
from apigate.services.usage_recorder import UsageRecorder

# Configure logging at import time
configure_logging(log_level=settings.log_level, json_output=not settings.local_mode)

logger = logging.getLogger(__name__)


def init_gateway_state(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    counter_store: RateCounterStore,
    config: Settings = settings,
    http_client=None,
    clock=time.time,
) -> None:
    """Wire the gateway components onto ``app.state``. Does not start background tasks."""
    app.state.db_session_factory = session_factory
    app.state.rate_limiter = RateLimiter(
        counter_store,
        window_seconds=config.rate_limit_window_seconds,
        failure_mode=config.rate_limit_failure_mode,
        clock=clock,
    )
    app.state.usage_recorder = UsageRecorder(
        SqlUsageSink(session_factory),
        max_pending=config.usage_buffer_size,
        batch_size=config.usage_flush_batch_size,
        flush_interval=config.usage_flush_interval_seconds,
    )
    # The middleware records usage once the response status is known
    app.state.authenticator = RequestAuthenticator(
        SqlCredentialStore(session_factory),
        app.state.rate_limiter,
    )
    app.state.dispatcher = WebhookDispatcher(
        SqlWebhookRegistry(session_factory),
        SqlDeliveryLog(session_factory),
        http_client=http_client,
        max_attempts=config.webhook_max_attempts,
        backoff_base=config.webhook_backoff_base_seconds,
        backoff_max=config.webhook_backoff_max_seconds,
        timeout=config.webhook_timeout_seconds,
        max_in_flight=config.webhook_max_in_flight,
        workers=config.webhook_workers,
        queue_size=config.webhook_queue_size,
        shutdown_grace=config.webhook_shutdown_grace_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown resources."""
    db_url = settings.effective_database_url
    engine = create_db_engine(db_url)

    # Auto-create tables for SQLite (local dev, no migrations)
    if "sqlite" in db_url:
        from apigate.db.base import Base
        import apigate.db.models  # noqa: F401 register all ORM models

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQLite tables created (local mode)")

    app.state.db_engine = engine

    if settings.local_mode:
        app.state.redis = None
        counter_store: RateCounterStore = InMemoryRateCounterStore()
        logger.warning("Local mode: rate-limit counters are in-process and not shared")
    else:
        import redis.asyncio as aioredis

        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        counter_store = RedisRateCounterStore(app.state.redis)

    init_gateway_state(app, create_session_factory(engine), counter_store)
    app.state.usage_recorder.start()
    app.state.dispatcher.start()

    logger.info(
        "apigate started (db=%s, rate_limit_failure_mode=%s)",
        "sqlite" if "sqlite" in db_url else "postgresql",
        settings.rate_limit_failure_mode.value,
    )
    yield

    # Shutdown
    await app.state.dispatcher.stop()
    await app.state.usage_recorder.stop()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await engine.dispose()
    logger.info("apigate shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="apigate",
        version=__version__,
        description="API gateway core: API-key authentication, rate limiting and signed webhook delivery.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add middleware (order matters: last added = first executed)
    from apigate.api.middleware.auth import AuthMiddleware
    from apigate.api.middleware.trace_id import TraceIdMiddleware
    app.add_middleware(AuthMiddleware)
    app.add_middleware(TraceIdMiddleware)

    from apigate.errors.handlers import register_exception_handlers
    register_exception_handlers(app)

    Instrumentator(
        should_group_status_codes=True,
        should_respect_env_var=False,
        excluded_handlers=["/api/v1/health.*", "/metrics"],
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    from apigate.api.router import api_router
    app.include_router(api_router)

    return app


app = create_app()
