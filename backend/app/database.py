"""
Centralized Supabase client access.

All server-side ledger code uses the service-role client; row level security
is bypassed, so callers must scope every query to the authenticated user.
"""

import os
import logging
from typing import Optional

from supabase import Client, create_client

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

_supabase_service: Optional[Client] = None


def get_supabase_service() -> Optional[Client]:
    """
    Get singleton service-role Supabase client.

    Returns None (and logs) when credentials are missing so that modules
    can be imported without a configured backend.
    """
    global _supabase_service
    if _supabase_service is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            logger.error("SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not configured")
            return None
        _supabase_service = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _supabase_service


def is_unique_violation(error: Exception) -> bool:
    """True if a PostgREST error is a Postgres unique_violation (23505)."""
    code = getattr(error, "code", None)
    if code == "23505":
        return True
    return "23505" in str(error) or "duplicate key" in str(error).lower()
