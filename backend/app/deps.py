"""
Shared FastAPI dependencies: authentication and admin checks.

Tokens are Supabase access tokens; they are verified by asking Supabase
Auth for the user, with a bounded retry for flaky network errors.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.database import get_supabase_service
from app.utils.errors import handle_exception, raise_forbidden, raise_unauthorized, TransientError
from app.utils.retry import with_retry

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme; missing headers are handled below
security = HTTPBearer(auto_error=False)


@dataclass
class AdminContext:
    """Authenticated admin making the request."""
    admin_id: str
    user_id: str
    email: Optional[str]
    role: str = "admin"


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """
    Resolve the bearer token to the current user.

    Returns:
        {"sub": user_id, "email": email}
    """
    if credentials is None or not credentials.credentials:
        raise raise_unauthorized()

    supabase = get_supabase_service()
    if supabase is None:
        raise raise_unauthorized("Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await with_retry(
            lambda: supabase.auth.get_user(token),
            operation="auth.get_user",
        )
    except TransientError as e:
        raise handle_exception(e, "auth.get_user")
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise raise_unauthorized("Invalid or expired token")

    user = getattr(response, "user", None)
    if user is None:
        raise raise_unauthorized("Invalid or expired token")

    return {"sub": user.id, "email": getattr(user, "email", None)}


async def get_admin_user(
    current_user: Dict[str, Any] = Depends(get_current_user),
) -> AdminContext:
    """Require the current user to hold the admin role."""
    user_id = current_user["sub"]
    supabase = get_supabase_service()

    response = supabase.table("user_roles").select("id, role").eq(
        "user_id", user_id
    ).eq(
        "role", "admin"
    ).limit(1).execute()

    if not response or not response.data:
        logger.warning(f"Non-admin user {user_id} attempted admin access")
        raise raise_forbidden("Admin access required")

    role_row = response.data[0]
    return AdminContext(
        admin_id=role_row["id"],
        user_id=user_id,
        email=current_user.get("email"),
        role=role_row.get("role", "admin"),
    )
