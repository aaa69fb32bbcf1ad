"""
Global pytest fixtures for the Creditline test suite.

Provides:
- Async database fixtures (temporary SQLite file per test)
- FastAPI test client sharing the test session
- Tenant/entity factories and a recording notifier
"""

import os
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio
import tenacity

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYMENT_PROVIDER"] = "stripe"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack_secret"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)


def _register_models():
    """Import every model module so Base.metadata knows all tables."""
    import app.models  # noqa: F401


_register_models()


# Mock tenacity to avoid retry delays
def mock_retry(*args, **kwargs):
    def decorator(f):
        return f

    return decorator


tenacity.retry = mock_retry


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from app.shared.db.session import enable_sqlite_savepoints

    db_file = f"test_{uuid4().hex}.sqlite"
    db_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_async_engine(db_url, echo=False)
    enable_sqlite_savepoints(engine)
    yield engine
    await engine.dispose()

    # Cleanup
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match API tests."""
    return db_session


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    """Use the real Creditline app."""
    from app.main import app as creditline_app

    return creditline_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient

    from app.shared.db.session import get_db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    if old_override:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)


# ============================================================================
# Domain Fixtures
# ============================================================================


@pytest.fixture
def notifier():
    """Notifier double recording every send(tenant_id, template, payload)."""
    mock = AsyncMock()
    mock.send = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def tenant_factory(db):
    """
    Create a tenant, optionally with a default organization and a user.

    Returns (tenant, organization); organization is None when with_org=False.
    """
    from app.models.entity import Entity, EntityType
    from app.models.tenant import Tenant, User

    async def _create(
        name: str = "Acme",
        *,
        with_org: bool = True,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
        is_active: bool = True,
    ):
        tenant = Tenant(
            id=uuid4(),
            name=name,
            plan="free",
            customer_id=customer_id,
            is_active=is_active,
        )
        db.add(tenant)
        await db.flush()

        organization = None
        if with_org:
            organization = Entity(
                tenant_id=tenant.id,
                name=f"{name} HQ",
                entity_type=EntityType.ORGANIZATION.value,
                is_default=True,
            )
            db.add(organization)
        if email:
            db.add(User(tenant_id=tenant.id, email=email))
        await db.commit()
        return tenant, organization

    return _create


@pytest.fixture
def entity_factory(db):
    """Create an entity under a tenant (organization by default)."""
    from app.models.entity import Entity, EntityType

    async def _create(tenant_id, *, name: str = "Branch", parent_id=None, entity_type=None):
        entity = Entity(
            tenant_id=tenant_id,
            name=name,
            parent_id=parent_id,
            entity_type=(entity_type or EntityType.ORGANIZATION).value,
        )
        db.add(entity)
        await db.commit()
        return entity

    return _create
