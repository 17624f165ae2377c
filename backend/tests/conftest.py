"""
Core314 Automation Engine - Test Fixtures
==========================================

Shared pytest fixtures for all tests.

Outbound HTTP never leaves the process: the notification service is built
on an httpx.MockTransport that records every request and answers 200
unless a test registers a failure for a URL.
"""

from collections.abc import AsyncGenerator
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core314.api.deps import (
    SCOPE_EXECUTOR_EXECUTE,
    create_access_token,
    create_delegation_token,
    get_notification_service,
)
from core314.api.main import app
from core314.core.automation.notifications import NotificationService
from core314.core.database import Base, get_db
from core314.core.models import User, UserRole
from tests.helpers import RecordingTransport


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# ==========================================================================
# Outbound HTTP
# ==========================================================================

@pytest.fixture
def http_log() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def notifier(http_log: RecordingTransport) -> AsyncGenerator[NotificationService, None]:
    """Notification service whose HTTP client never touches the network."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(http_log)) as http_client:
        yield NotificationService(client=http_client)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, notifier: NotificationService) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and notifier overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_notifier() -> AsyncGenerator[NotificationService, None]:
        yield notifier

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_service] = override_notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# User Fixtures
# ==========================================================================

async def _create_user(db: AsyncSession, email: str, name: str, role: UserRole, is_active: bool = True) -> User:
    user = User(id=uuid4(), email=email, name=name, role=role, is_active=is_active)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    return await _create_user(db_session, "test@example.com", "Test User", UserRole.USER)


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    """A second tenant; its data must stay invisible to test_user."""
    return await _create_user(db_session, "other@example.com", "Other User", UserRole.USER)


@pytest_asyncio.fixture
async def inactive_user(db_session: AsyncSession) -> User:
    """Create an inactive test user."""
    return await _create_user(db_session, "inactive@example.com", "Inactive User", UserRole.USER, is_active=False)


# ==========================================================================
# Auth Fixtures
# ==========================================================================

@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Get authorization headers for test user."""
    token = create_access_token(test_user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def executor_service_headers(test_user: User) -> dict[str, str]:
    """Delegation token a backend service holds to execute for test_user only."""
    token = create_delegation_token(test_user.id, service="decision-engine", scopes=[SCOPE_EXECUTOR_EXECUTE])
    return {"Authorization": f"Bearer {token}"}
