"""Shared test fixtures."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from apigate.config import Settings
from apigate.db.base import Base
# Import all models to register with Base.metadata
import apigate.db.models  # noqa: F401
from apigate.repositories.client_repo import ClientRepository
from apigate.services.rate_limiter import InMemoryRateCounterStore

WINDOW_START = 1_800_000_000.0  # divisible by 60


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = WINDOW_START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions each get their own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'apigate.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_client(session_factory):
    """Create a client row; returns (row, raw_key)."""

    async def _make(name: str = "acme", rate_limit: int = 100, **kwargs):
        async with session_factory() as session:
            row, raw_key = await ClientRepository(session).create_client(
                name=name, rate_limit=rate_limit, **kwargs
            )
            await session.commit()
            return row, raw_key

    return _make


@pytest.fixture
def received():
    """Requests captured by the fake webhook receiver."""
    return []


@pytest.fixture
def webhook_http_client(received):
    """httpx client whose transport accepts every webhook with 200."""

    async def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def app(session_factory, clock, webhook_http_client):
    """Create a test application wired to the test database and a fake clock."""
    from apigate.main import create_app, init_gateway_state

    _app = create_app()
    _app.state.redis = None
    init_gateway_state(
        _app,
        session_factory,
        InMemoryRateCounterStore(clock),
        config=Settings(
            rate_limit_window_seconds=60,
            webhook_max_attempts=3,
            webhook_backoff_base_seconds=0.0,
            webhook_workers=1,
        ),
        http_client=webhook_http_client,
        clock=clock,
    )
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
