"""
Admin Affiliates Router - Affiliate Management for Admins

Endpoints for listing affiliates, deciding manual payout requests
and issuing customer refunds (which reverse affiliate commission).
"""

import logging
from typing import Optional, List, Literal
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.deps import get_admin_user, AdminContext
from app.services.affiliate_service import get_affiliate_service
from app.utils.errors import handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliates", tags=["admin-affiliates"])


# =============================================================================
# Request/Response Models
# =============================================================================

class AffiliateListResponse(BaseModel):
    """Paginated affiliate list."""
    affiliates: List[dict]
    total: int
    page: int
    page_size: int


class PayoutListResponse(BaseModel):
    payouts: List[dict]
    total: int
    page: int
    page_size: int


class UpdatePayoutStatusRequest(BaseModel):
    """Admin decision on a pending payout."""
    status: Literal["paid", "denied"]


class IssueRefundRequest(BaseModel):
    """Refund a customer payment."""
    payment_intent_id: str = Field(..., description="Stripe PaymentIntent to refund")
    customer_email: Optional[str] = Field(None, description="Customer to notify; looked up if omitted")
    amount_cents: Optional[int] = Field(None, gt=0, description="Partial amount; full refund if omitted")


class IssueRefundResponse(BaseModel):
    refund_id: str
    amount_cents: int
    currency: str
    commission_reversed: bool
    deduction: Optional[float] = None


# =============================================================================
# LIST ENDPOINTS
# =============================================================================

@router.get("", response_model=AffiliateListResponse)
async def list_affiliates(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: AdminContext = Depends(get_admin_user)
):
    """List all affiliates with pagination."""
    try:
        affiliates, total = await get_affiliate_service().list_affiliates(page, page_size)
    except Exception as e:
        raise handle_exception(e, "admin_list_affiliates", user_id=admin.user_id)

    return AffiliateListResponse(
        affiliates=affiliates,
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    status: Optional[str] = Query(None, description="pending, paid, denied or completed"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: AdminContext = Depends(get_admin_user)
):
    """List payout rows, newest first."""
    try:
        payouts, total = await get_affiliate_service().list_payouts(status, page, page_size)
    except Exception as e:
        raise handle_exception(e, "admin_list_payouts", user_id=admin.user_id)

    return PayoutListResponse(payouts=payouts, total=total, page=page, page_size=page_size)


# =============================================================================
# ACTIONS
# =============================================================================

@router.post("/payouts/{payout_id}/status")
async def update_payout_status(
    payout_id: str,
    request: UpdatePayoutStatusRequest,
    admin: AdminContext = Depends(get_admin_user)
):
    """
    Mark a pending payout request as paid or denied.

    Returns 409 if the payout has already been decided.
    """
    try:
        payout = await get_affiliate_service().set_payout_status(payout_id, request.status)
    except Exception as e:
        raise handle_exception(e, "admin_update_payout_status", user_id=admin.user_id, resource_id=payout_id)

    logger.info(f"Admin {admin.email} marked payout {payout_id} as {request.status}")
    return {"success": True, "payout": payout}


@router.post("/refunds", response_model=IssueRefundResponse)
async def issue_refund(
    request: IssueRefundRequest,
    admin: AdminContext = Depends(get_admin_user)
):
    """
    Refund a customer and reverse the referring affiliate's commission.
    """
    try:
        result = await get_affiliate_service().issue_refund(
            payment_intent_id=request.payment_intent_id,
            customer_email=request.customer_email,
            amount_cents=request.amount_cents,
        )
    except Exception as e:
        raise handle_exception(e, "admin_issue_refund", user_id=admin.user_id, resource_id=request.payment_intent_id)

    logger.info(f"Admin {admin.email} refunded {request.payment_intent_id}: {result['refund_id']}")

    reversal = result["reversal"]
    return IssueRefundResponse(
        refund_id=result["refund_id"],
        amount_cents=result["amount_cents"],
        currency=result["currency"],
        commission_reversed=reversal["applied"],
        deduction=float(reversal["deduction"]) if reversal["deduction"] is not None else None,
    )
