"""
tests/test_auth.py
Tests for authentication: bearer JWT validation, deny-list on logout, /me endpoint.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from jose import jwt

from config.settings import settings
from shared.models.models import User
from shared.utils.security import create_access_token, get_token_remaining_ttl
from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient):
    """Protected endpoints return 401 without a token."""
    response = await client.get("/auth/me")
    assert response.status_code == 401
    assert response.json()["code"] == "HTTP_401"


@pytest.mark.asyncio
async def test_get_me_returns_profile(client: AsyncClient, mentee: User):
    response = await client.get("/auth/me", headers=auth_headers(mentee))
    assert response.status_code == 200
    data = response.json()
    assert data["email"] == mentee.email
    assert data["roles"] == ["MENTEE"]


@pytest.mark.asyncio
async def test_get_me_admin(client: AsyncClient, admin_user: User):
    response = await client.get("/auth/me", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["roles"] == ["ADMIN"]


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient):
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_expired_token_rejected(client: AsyncClient, mentee: User):
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": str(mentee.id),
            "jti": "expired",
            "type": "access",
            "iat": now - timedelta(hours=2),
            "exp": now - timedelta(hours=1),
        },
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    response = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_user_rejected(client: AsyncClient):
    token, _ = create_access_token("7f6b6a1e-0000-4000-8000-000000000000", ["MENTEE"], "ghost@example.com")
    response = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["error"] == "User not found"


@pytest.mark.asyncio
async def test_logout_revokes_token(client: AsyncClient, mentee: User, redis_mock):
    token, jti = create_access_token(str(mentee.id), mentee.roles, mentee.email)
    response = await client.post("/auth/logout", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["message"] == "Logged out successfully"

    redis_mock.setex.assert_awaited_once()
    key, ttl, _ = redis_mock.setex.await_args.args
    assert key == f"jwt_revoked:{jti}"
    assert 0 < ttl <= settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60


@pytest.mark.asyncio
async def test_revoked_token_rejected(client: AsyncClient, mentee: User, redis_mock):
    redis_mock.exists.return_value = 1
    response = await client.get("/auth/me", headers=auth_headers(mentee))
    assert response.status_code == 401
    assert response.json()["error"] == "Token has been revoked"


def test_remaining_ttl_never_negative():
    past = (datetime.now(timezone.utc) - timedelta(minutes=5)).timestamp()
    assert get_token_remaining_ttl({"exp": past}) == 0
