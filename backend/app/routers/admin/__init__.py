"""
Admin Panel Routers
===================

Admin endpoints for the ThreadPosts affiliate program.
All routes are protected and require the admin role (user_roles table).

Routers:
- affiliates: Affiliate listing, payout decisions and refunds
"""

from fastapi import APIRouter

# Import sub-routers
from .affiliates import router as affiliates_router

# Create main admin router
router = APIRouter(prefix="/admin", tags=["admin"])

# Include all sub-routers
router.include_router(affiliates_router)

__all__ = ["router"]
