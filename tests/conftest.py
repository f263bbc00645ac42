"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database (in-memory SQLite, async)
- A controllable clock and a fake gateway transport
- A fully wired pipeline built on both
"""
# gateway credentials and admin key before importing outreach; the settings
# validator warns when credentials are empty
import os
os.environ.setdefault("GATEWAY_INSTANCE_ID", "test-instance")
os.environ.setdefault("GATEWAY_TOKEN", "test-token")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from outreach.core.config import Settings
from outreach.core.events import EventBus
from outreach.db.database import Base
from outreach.db import models  # noqa: F401
from outreach.db.models.queued_message import QueuedMessage
from outreach.runtime import build_pipeline
from outreach.state_machine.states import MessageStatus
from tests.helpers import CONTACT, FakeClock, FakeTransport

# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncSession:
    """Session for arranging and inspecting rows directly"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        GATEWAY_INSTANCE_ID="test-instance",
        GATEWAY_TOKEN="test-token",
        ADMIN_API_KEY="test-admin-key",
        QUEUE_SEND_DELAY_SECONDS=0.5,
        DAILY_MESSAGE_CAP=1000,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(events):
    """Every event published on the bus, in order"""
    received = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def pipeline(session_factory, test_settings, fake_transport, clock, events, fake_sleep):
    return build_pipeline(
        session_factory,
        test_settings,
        transport=fake_transport,
        events=events,
        clock=clock,
        sleep=fake_sleep,
    )


@pytest.fixture
def job_factory(session_factory, clock):
    """Insert a QueuedMessage directly, bypassing enqueue validation"""
    async def _create_job(
        contact: str = CONTACT,
        body: str = "Olá",
        status: MessageStatus = MessageStatus.PENDING,
        priority: int = 1,
        scheduled_for: Optional[datetime] = None,
        current_retries: int = 0,
        max_retries: int = 3,
        correlation_id: Optional[str] = None,
        external_id: Optional[str] = None,
        **columns,
    ) -> QueuedMessage:
        now = clock()
        job = QueuedMessage(
            contact=contact,
            body=body,
            status=status,
            priority=priority,
            scheduled_for=scheduled_for or now,
            current_retries=current_retries,
            max_retries=max_retries,
            correlation_id=correlation_id,
            external_id=external_id,
            created_by="tests",
            created_at=columns.pop("created_at", now),
            updated_at=columns.pop("updated_at", now),
            **columns,
        )
        async with session_factory() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job

    return _create_job


@pytest.fixture
async def test_client(pipeline):
    """HTTP client bound to the app, with the test pipeline injected"""
    from httpx import AsyncClient, ASGITransport

    from outreach.api.dependencies.pipeline import get_pipeline
    from outreach.main import app

    app.dependency_overrides[get_pipeline] = lambda: pipeline

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": "test-admin-key"}
