"""
Tests for the authentication and admin dependencies.
"""

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app import deps
from tests.fakes import FakeAuthUser


@pytest.fixture
def auth_db(db, monkeypatch):
    monkeypatch.setattr(deps, "get_supabase_service", lambda: db)
    db.auth.tokens["good-token"] = FakeAuthUser("user-1", "user1@example.com")
    return db


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_valid_token_resolves_user(auth_db):
    """A token Supabase accepts resolves to sub and email."""
    user = await deps.get_current_user(bearer("good-token"))

    assert user == {"sub": "user-1", "email": "user1@example.com"}


@pytest.mark.asyncio
async def test_missing_credentials(auth_db):
    with pytest.raises(HTTPException) as exc:
        await deps.get_current_user(None)

    assert exc.value.status_code == 401
    assert auth_db.auth.calls == 0


@pytest.mark.asyncio
async def test_invalid_token(auth_db):
    """Rejected tokens are not retried."""
    with pytest.raises(HTTPException) as exc:
        await deps.get_current_user(bearer("forged"))

    assert exc.value.status_code == 401
    assert exc.value.detail["message"] == "Invalid or expired token"
    assert auth_db.auth.calls == 1


@pytest.mark.asyncio
async def test_transient_auth_error_is_retried(auth_db):
    """One flaky network failure is absorbed by the retry."""
    auth_db.auth.errors.append(Exception("Connection reset by peer"))

    user = await deps.get_current_user(bearer("good-token"))

    assert user["sub"] == "user-1"
    assert auth_db.auth.calls == 2


@pytest.mark.asyncio
async def test_persistent_transient_error_is_503(auth_db):
    """An auth outage is a retryable 503, not a rejected token."""
    auth_db.auth.errors.extend([Exception("Request timed out")] * 3)

    with pytest.raises(HTTPException) as exc:
        await deps.get_current_user(bearer("good-token"))

    assert exc.value.status_code == 503
    assert exc.value.detail["error"] == "SERVICE_UNAVAILABLE"
    assert "auth.get_user failed after 3 attempts" in exc.value.detail["message"]
    assert auth_db.auth.calls == 3


@pytest.mark.asyncio
async def test_admin_requires_role(auth_db):
    with pytest.raises(HTTPException) as exc:
        await deps.get_admin_user({"sub": "user-1", "email": "user1@example.com"})

    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_admin_with_role(auth_db):
    role = auth_db.seed("user_roles", user_id="admin-1", role="admin")

    admin = await deps.get_admin_user({"sub": "admin-1", "email": "admin@example.com"})

    assert admin.admin_id == role["id"]
    assert admin.user_id == "admin-1"
    assert admin.email == "admin@example.com"
    assert admin.role == "admin"


@pytest.mark.asyncio
async def test_other_roles_are_not_admin(auth_db):
    auth_db.seed("user_roles", user_id="user-1", role="support")

    with pytest.raises(HTTPException) as exc:
        await deps.get_admin_user({"sub": "user-1", "email": None})

    assert exc.value.status_code == 403
