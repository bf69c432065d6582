import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ["SMS_EMAIL"] = ""
os.environ["SMS_PASSWORD"] = ""
os.environ["SMTP_HOST"] = ""

from decimal import Decimal
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from educrm.auth.models import User
from educrm.core.enums import UserRole
from educrm.core.models import Organization, Student
from educrm.db.session import Base, get_db
from educrm.main import app
from educrm.notifications.receipts import get_receipt_notifier
from tests.helpers import RecordingNotifier, make_student, make_user


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture()
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test; overrides the FastAPI session dependency."""
    # StaticPool keeps the single in-memory connection alive across sessions
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    recording = RecordingNotifier()
    app.dependency_overrides[get_receipt_notifier] = lambda: recording
    yield recording
    app.dependency_overrides.pop(get_receipt_notifier, None)


@pytest.fixture()
async def client(db_session: AsyncSession, notifier: RecordingNotifier) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
async def organization(db_session: AsyncSession) -> Organization:
    org = Organization(
        name="Bright Future Center",
        address="Tashkent, Chilonzor 5",
        currency="UZS",
        grace_period_days=5,
        late_fee_per_day=Decimal("1000"),
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest.fixture()
async def admin_user(db_session: AsyncSession, organization: Organization) -> User:
    return await make_user(db_session, organization, UserRole.ADMIN, "admin@center.uz")


@pytest.fixture()
async def accountant_user(db_session: AsyncSession, organization: Organization) -> User:
    return await make_user(db_session, organization, UserRole.ACCOUNTANT, "accountant@center.uz")


@pytest.fixture()
async def teacher_user(db_session: AsyncSession, organization: Organization) -> User:
    return await make_user(db_session, organization, UserRole.TEACHER, "teacher@center.uz")


@pytest.fixture()
async def student(db_session: AsyncSession, organization: Organization) -> Student:
    return await make_student(db_session, organization)
