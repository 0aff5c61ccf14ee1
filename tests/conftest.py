"""
Shared test fixtures for the Timekeeper test suite.

Every test gets its own in-memory SQLite database (aiosqlite + StaticPool),
shared by the direct ``db_session`` and the sessions the app opens through
the overridden ``get_db`` dependency.
"""

import os
import sys
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["TIMEZONE"] = "UTC"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from timekeeper.api.v1.deps import get_db
from timekeeper.api.v1.endpoints.auth import limiter
from timekeeper.core.security import create_access_token
from timekeeper.db.base import Base
from timekeeper.main import app
from timekeeper.models.employee import Employee
from timekeeper.models.user import User
from timekeeper.services.identity import Actor

from timeline import NOW


@pytest.fixture
def frozen_now(monkeypatch):
    """Pin the service clock to ``NOW`` for requests going through the API."""
    for module in (
        "timekeeper.services.records",
        "timekeeper.services.corrections",
        "timekeeper.services.approval",
        "timekeeper.services.audit",
    ):
        monkeypatch.setattr(f"{module}.epoch_now", lambda: NOW)
    return NOW


# ── Database ────────────────────────────────────────────────────────
@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def async_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app and the test database."""

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


# ── Accounts ────────────────────────────────────────────────────────
async def make_user(db: AsyncSession, email: str, *, role: str = "employee", **kwargs) -> User:
    user = User(email=email, role=role, full_name=kwargs.pop("full_name", email), **kwargs)
    db.add(user)
    await db.commit()
    return user


async def make_employee(db: AsyncSession, email: str, *, with_user: bool = True, **kwargs) -> Employee:
    """Employee login plus (by default) the users row it resolves to."""
    employee = Employee(name=kwargs.pop("name", email.split("@")[0]), email=email, **kwargs)
    db.add(employee)
    if with_user:
        db.add(User(email=email, role="employee", full_name=employee.name))
    await db.commit()
    return employee


def bearer(subject: int, kind: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(subject, kind=kind)}"}


@pytest.fixture
async def employee_user(db_session) -> User:
    return await make_user(db_session, "alice@example.com")


@pytest.fixture
async def other_user(db_session) -> User:
    return await make_user(db_session, "bob@example.com")


@pytest.fixture
async def admin_user(db_session) -> User:
    return await make_user(db_session, "boss@example.com", role="admin")


@pytest.fixture
def actor(employee_user) -> Actor:
    return Actor(user_id=employee_user.id)


@pytest.fixture
def other_actor(other_user) -> Actor:
    return Actor(user_id=other_user.id)


@pytest.fixture
def admin_actor(admin_user) -> Actor:
    return Actor(user_id=admin_user.id, is_admin=True)


@pytest.fixture
async def employee_headers(db_session) -> dict:
    employee = await make_employee(db_session, "carol@example.com", name="Carol")
    return bearer(employee.id, "employee")


@pytest.fixture
async def admin_headers(admin_user) -> dict:
    return bearer(admin_user.id, "admin")
