"""
Affiliate Router - Affiliate Program API

Endpoints for affiliate enrollment, dashboard, referral tracking,
payouts and Stripe Connect onboarding.

Public endpoints (no auth):
- POST /affiliate/track - Track a ?ref= visit, returns the attribution token
- GET /affiliate/validate/{affiliate_id} - Re-validate a stored token

Authenticated endpoints:
- GET /affiliate/status - Check if current user is an affiliate
- POST /affiliate/join - Become an affiliate
- PATCH /affiliate/referral-code - Change referral code
- GET /affiliate/dashboard - Balances and recent ledger lines
- POST /affiliate/payout - Pay out the pending balance via Stripe Connect
- POST /affiliate/payout-requests - Ask an admin for a manual payout
- POST /affiliate/connect/onboarding - Get Stripe Connect onboarding URL
- GET /affiliate/connect/status - Refresh Stripe Connect status
"""

import logging
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.deps import get_current_user
from app.services.affiliate_service import get_affiliate_service
from app.utils.errors import handle_exception, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliate", tags=["affiliate"])


# =============================================================================
# Request/Response Models
# =============================================================================

class TrackReferralRequest(BaseModel):
    """Request to track a referral visit."""
    referral_code: str = Field(..., description="Code from the ?ref= parameter")
    source: Optional[str] = Field(None, description="Referrer URL, 'direct' if absent")


class TrackReferralResponse(BaseModel):
    """Response for referral tracking."""
    success: bool
    affiliate_id: Optional[str] = None


class ValidateTokenResponse(BaseModel):
    valid: bool
    affiliate_id: Optional[str] = None


class AffiliateStatusResponse(BaseModel):
    """Response for affiliate status check."""
    is_affiliate: bool
    affiliate: Optional[Dict[str, Any]] = None


class JoinRequest(BaseModel):
    """Request to join the affiliate program."""
    referral_code: Optional[str] = Field(None, description="Preferred code; generated if omitted")


class UpdateReferralCodeRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=64)


class AffiliateStatsResponse(BaseModel):
    """Affiliate statistics."""
    pending_balance: float
    total_earnings: float
    total_clicks: int
    total_conversions: int
    conversion_rate: float


class AffiliateDashboardResponse(BaseModel):
    """Full affiliate dashboard data."""
    affiliate: Dict[str, Any]
    stats: AffiliateStatsResponse
    recent_earnings: List[Dict[str, Any]]
    recent_deductions: List[Dict[str, Any]]
    recent_payouts: List[Dict[str, Any]]


class PayoutResponse(BaseModel):
    """Result of a self-service payout."""
    success: bool
    amount: float
    transfer_id: Optional[str] = None


class PayoutRequestResponse(BaseModel):
    """A pending payout request."""
    id: str
    amount: float
    status: str


class ConnectOnboardingRequest(BaseModel):
    """Request for Stripe Connect onboarding URL."""
    return_url: str = Field(..., description="URL to redirect after completion")
    refresh_url: str = Field(..., description="URL if link expires")


class ConnectOnboardingResponse(BaseModel):
    """Response with Stripe Connect onboarding URL."""
    url: str


class ConnectStatusResponse(BaseModel):
    """Stripe Connect account status."""
    onboarded: bool
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool


def _client_ip(request: Request) -> str:
    """Client IP, preferring proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else "unknown"


async def _require_affiliate(user_id: str) -> Dict[str, Any]:
    affiliate = await get_affiliate_service().get_affiliate_by_user(user_id)
    if not affiliate:
        raise NotFoundError("Affiliate")
    return affiliate


# =============================================================================
# PUBLIC ENDPOINTS (No Auth)
# =============================================================================

@router.post("/track", response_model=TrackReferralResponse)
async def track_referral(
    request: TrackReferralRequest,
    http_request: Request
):
    """
    Track an affiliate link visit.

    Called from frontend when a visitor lands with ?ref=. The returned
    affiliate_id is stored client-side and sent back at checkout.
    Unknown codes return success=false rather than an error.
    """
    affiliate_service = get_affiliate_service()

    affiliate_id = await affiliate_service.track_referral_click(
        referral_code=request.referral_code,
        source=request.source,
        ip_address=_client_ip(http_request),
        user_agent=http_request.headers.get("user-agent"),
    )

    return TrackReferralResponse(success=affiliate_id is not None, affiliate_id=affiliate_id)


@router.get("/validate/{affiliate_id}", response_model=ValidateTokenResponse)
async def validate_affiliate_token(affiliate_id: str):
    """Check that a client-held attribution token still resolves."""
    affiliate_service = get_affiliate_service()
    valid_id = await affiliate_service.validate_affiliate_token(affiliate_id)
    return ValidateTokenResponse(valid=valid_id is not None, affiliate_id=valid_id)


# =============================================================================
# AUTHENTICATED ENDPOINTS
# =============================================================================

@router.get("/status", response_model=AffiliateStatusResponse)
async def get_affiliate_status(
    current_user: dict = Depends(get_current_user)
):
    """Check if the current user is an affiliate."""
    user_id = current_user["sub"]
    try:
        affiliate = await get_affiliate_service().get_affiliate_by_user(user_id)
    except Exception as e:
        raise handle_exception(e, "get_affiliate_status", user_id=user_id)

    return AffiliateStatusResponse(is_affiliate=affiliate is not None, affiliate=affiliate)


@router.post("/join", response_model=AffiliateStatusResponse)
async def join_affiliate_program(
    request: JoinRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Enroll the current user as an affiliate.

    Returns 409 if already enrolled or the chosen code is taken,
    400 if the chosen code is malformed.
    """
    user_id = current_user["sub"]
    try:
        affiliate = await get_affiliate_service().create_affiliate(
            user_id=user_id,
            referral_code=request.referral_code,
        )
    except Exception as e:
        raise handle_exception(e, "join_affiliate_program", user_id=user_id)

    return AffiliateStatusResponse(is_affiliate=True, affiliate=affiliate)


@router.patch("/referral-code", response_model=AffiliateStatusResponse)
async def update_referral_code(
    request: UpdateReferralCodeRequest,
    current_user: dict = Depends(get_current_user)
):
    """Change the current affiliate's referral code."""
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        updated = await get_affiliate_service().update_referral_code(
            affiliate["id"], request.referral_code
        )
    except Exception as e:
        raise handle_exception(e, "update_referral_code", user_id=user_id)

    return AffiliateStatusResponse(is_affiliate=True, affiliate=updated)


@router.get("/dashboard", response_model=AffiliateDashboardResponse)
async def get_affiliate_dashboard(
    current_user: dict = Depends(get_current_user)
):
    """Get dashboard data for the current affiliate."""
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        data = await get_affiliate_service().get_dashboard_data(affiliate["id"])
    except Exception as e:
        raise handle_exception(e, "get_affiliate_dashboard", user_id=user_id)

    return AffiliateDashboardResponse(**data)


@router.post("/payout", response_model=PayoutResponse)
async def request_payout(
    current_user: dict = Depends(get_current_user)
):
    """
    Pay out the full pending balance to the connected Stripe account.

    Returns 400 when onboarding is incomplete or the balance is below
    the threshold, 502 when the transfer fails.
    """
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        result = await get_affiliate_service().request_payout(affiliate["id"])
    except Exception as e:
        raise handle_exception(e, "request_payout", user_id=user_id)

    return PayoutResponse(
        success=True,
        amount=float(result["amount"]),
        transfer_id=result["transfer_id"],
    )


@router.post("/payout-requests", response_model=PayoutRequestResponse)
async def create_payout_request(
    current_user: dict = Depends(get_current_user)
):
    """Ask an admin to pay out the pending balance manually."""
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        payout = await get_affiliate_service().create_payout_request(affiliate["id"])
    except Exception as e:
        raise handle_exception(e, "create_payout_request", user_id=user_id)

    return PayoutRequestResponse(
        id=payout["id"],
        amount=float(payout["amount"]),
        status=payout["status"],
    )


# =============================================================================
# STRIPE CONNECT
# =============================================================================

@router.post("/connect/onboarding", response_model=ConnectOnboardingResponse)
async def get_connect_onboarding_url(
    request: ConnectOnboardingRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Get Stripe Connect onboarding URL.

    Creates the Express account on first use.
    """
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        url = await get_affiliate_service().get_connect_onboarding_url(
            affiliate_id=affiliate["id"],
            email=current_user.get("email"),
            return_url=request.return_url,
            refresh_url=request.refresh_url,
        )
    except Exception as e:
        raise handle_exception(e, "get_connect_onboarding_url", user_id=user_id)

    return ConnectOnboardingResponse(url=url)


@router.get("/connect/status", response_model=ConnectStatusResponse)
async def get_connect_status(
    current_user: dict = Depends(get_current_user)
):
    """Refresh and return the Stripe Connect onboarding status."""
    user_id = current_user["sub"]
    try:
        affiliate = await _require_affiliate(user_id)
        status = await get_affiliate_service().sync_connect_status(affiliate["id"])
    except Exception as e:
        raise handle_exception(e, "get_connect_status", user_id=user_id)

    return ConnectStatusResponse(**status)
