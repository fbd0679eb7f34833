"""
Billing Router - API endpoints for subscription checkout

Handles checkout creation and the synchronous post-checkout confirmation.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from app.deps import get_current_user
from app.utils.errors import handle_exception, raise_unauthorized
from app.services.checkout_service import get_checkout_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ==========================================
# REQUEST/RESPONSE MODELS
# ==========================================

class CheckoutRequest(BaseModel):
    affiliate_id: Optional[str] = None  # Attribution token from /affiliate/track
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class ConfirmCheckoutRequest(BaseModel):
    session_id: str


class ConfirmCheckoutResponse(BaseModel):
    session_id: str
    payment_status: Optional[str] = None
    conversion_created: bool
    commission_applied: bool


# ==========================================
# CHECKOUT ENDPOINTS
# ==========================================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    current_user: dict = Depends(get_current_user)
):
    """Create a Stripe Checkout session for the monthly subscription."""
    user_id = current_user["sub"]
    email = current_user.get("email")
    if not email:
        raise_unauthorized("User email not available")

    try:
        result = await get_checkout_service().create_checkout_session(
            user_id=user_id,
            email=email,
            affiliate_id=request.affiliate_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except Exception as e:
        raise handle_exception(e, "create_checkout", user_id=user_id)

    return CheckoutResponse(**result)


@router.post("/checkout/confirm", response_model=ConfirmCheckoutResponse)
async def confirm_checkout(
    request: ConfirmCheckoutRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Confirm a checkout after redirect.

    Records the conversion and commission if the session is paid.
    Safe to call repeatedly and in any order with the Stripe webhook.
    """
    user_id = current_user["sub"]
    try:
        result = await get_checkout_service().confirm_checkout(request.session_id, user_id)
    except Exception as e:
        raise handle_exception(e, "confirm_checkout", user_id=user_id, resource_id=request.session_id)

    return ConfirmCheckoutResponse(
        session_id=result["session_id"],
        payment_status=result.get("payment_status"),
        conversion_created=result.get("conversion_created", False),
        commission_applied=result.get("commission_applied", False),
    )
