from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient
from starlette.websockets import WebSocketState
from testcontainers.postgres import PostgresContainer

from app.database import Base, get_session, settings
from app.main import app
from app.services.broadcaster import Broadcaster
from app.services.connection_registry import ConnectionRegistry
from app.services.history_store import InMemoryHistoryStore


@pytest.fixture(scope="session")
def postgres_container():
    """Share a single PostgreSQL container across the entire test session.

    Use driver=None to avoid greenlet errors during the sync health check.
    The asyncpg driver is specified when getting the connection URL.
    """
    with PostgresContainer("postgres:16", driver=None) as postgres:
        yield postgres


@pytest.fixture(scope="function")
async def db_engine(postgres_container):
    """Recreate tables for each test to ensure isolation."""
    url = postgres_container.get_connection_url(driver="asyncpg")
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def broadcaster():
    """Broadcaster over an in-memory store; not running unless a test starts it."""
    return Broadcaster(
        ConnectionRegistry(),
        InMemoryHistoryStore(),
        retry_base_delay=0,
        retry_max_delay=0,
    )


@pytest.fixture(scope="function")
async def client(db_session, broadcaster):
    app.dependency_overrides[get_session] = lambda: db_session
    app.state.broadcaster = broadcaster
    app.state.documents = []
    # Disable rate limiting in tests
    app.state.limiter.enabled = False
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.state.limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def relay_store():
    return InMemoryHistoryStore()


@pytest.fixture(scope="function")
def relay_client(relay_store):
    """TestClient with the app lifespan running, so the broadcaster task is live.

    All WebSocket sessions opened from it share the lifespan's event loop.
    """
    with (
        patch.object(settings, "documents_enabled", False),
        patch("app.main.create_history_store", return_value=relay_store),
        TestClient(app) as test_client,
    ):
        yield test_client


@pytest.fixture
def make_websocket():
    """Factory for stand-ins of a connected Starlette WebSocket."""

    def factory(send_side_effect=None):
        websocket = MagicMock()
        websocket.client_state = WebSocketState.CONNECTED
        websocket.application_state = WebSocketState.CONNECTED
        websocket.send_text = AsyncMock(side_effect=send_side_effect)
        websocket.close = AsyncMock()
        return websocket

    return factory
