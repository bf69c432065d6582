from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.models import User
from tests.helpers import TEST_PASSWORD


@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, admin_user: User) -> None:
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": admin_user.email, "password": TEST_PASSWORD},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["access_token"]
    assert data["user"]["email"] == admin_user.email
    assert data["user"]["role"] == "admin"
    assert UUID(data["organization_id"]) == admin_user.organization_id

    # The issued token is accepted by protected endpoints
    listing = await client.get(
        "/api/v1/payments",
        headers={"Authorization": f"Bearer {data['access_token']}"},
    )
    assert listing.status_code == 200
    assert listing.json()["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, admin_user: User) -> None:
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": admin_user.email, "password": "WrongPass123"},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_login_unknown_email(client: AsyncClient, admin_user: User) -> None:
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": "nobody@center.uz", "password": TEST_PASSWORD},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inactive_user_cannot_login(
    client: AsyncClient, db_session: AsyncSession, admin_user: User
) -> None:
    admin_user.status = "INACTIVE"
    await db_session.commit()

    response = await client.post(
        "/api/v1/auth/login",
        json={"email": admin_user.email, "password": TEST_PASSWORD},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_login_oauth_form(client: AsyncClient, admin_user: User) -> None:
    response = await client.post(
        "/api/v1/auth/login-oauth",
        data={"username": admin_user.email, "password": TEST_PASSWORD},
    )

    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(client: AsyncClient) -> None:
    response = await client.get("/api/v1/payments", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
