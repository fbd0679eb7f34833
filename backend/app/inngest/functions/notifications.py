"""
Affiliate Notification Emails

Event-driven email delivery for the affiliate ledger. Each function
resolves the recipient, renders the template and sends it via Resend.
Failures are retried by Inngest and never reach the ledger.

Events:
- threadposts/affiliate.threshold_reached
- threadposts/affiliate.payout_result
- threadposts/affiliate.welcome
- threadposts/refund.processed
"""

import logging
from typing import Any, Dict, Optional
from inngest import TriggerEvent, NonRetriableError

from app.config import get_program_config
from app.database import get_supabase_service
from app.inngest.client import inngest_client
from app.inngest.events import Events
from app.services.email_service import (
    get_email_service,
    render_affiliate_welcome,
    render_payout_result,
    render_refund_processed,
    render_threshold_reached,
)

logger = logging.getLogger(__name__)


def _affiliate_recipient(affiliate_id: str) -> Optional[Dict[str, Any]]:
    """Email and name of the user behind an affiliate."""
    supabase = get_supabase_service()

    affiliate = supabase.table("affiliates").select(
        "user_id, referral_code"
    ).eq("id", affiliate_id).maybe_single().execute()
    if not affiliate or not affiliate.data:
        return None

    profile = supabase.table("profiles").select(
        "email, full_name"
    ).eq("user_id", affiliate.data["user_id"]).maybe_single().execute()
    if not profile or not profile.data or not profile.data.get("email"):
        return None

    return {
        "email": profile.data["email"],
        "name": profile.data.get("full_name"),
        "referral_code": affiliate.data["referral_code"],
    }


async def _deliver(step, to: str, message: Dict[str, str]) -> Dict[str, Any]:
    async def send():
        result = await get_email_service().send(to, message["subject"], message["html"])
        if not result.get("success"):
            raise RuntimeError(f"Email delivery failed: {result.get('error')}")
        return result

    return await step.run("send-email", send)


async def _resolve(step, affiliate_id: str) -> Dict[str, Any]:
    async def lookup():
        return _affiliate_recipient(affiliate_id)

    recipient = await step.run("resolve-recipient", lookup)
    if not recipient:
        raise NonRetriableError(f"No email on file for affiliate {affiliate_id}")
    return recipient


@inngest_client.create_function(
    fn_id="affiliate-threshold-reached-email",
    trigger=TriggerEvent(event=Events.AFFILIATE_THRESHOLD_REACHED),
    retries=3,
)
async def threshold_reached_email_fn(ctx, step):
    """Tell an affiliate their pending balance can now be paid out."""
    data = ctx.event.data
    recipient = await _resolve(step, data["affiliate_id"])

    config = get_program_config()
    message = render_threshold_reached(
        recipient["name"],
        data["new_balance"],
        data["threshold"],
        f"{config.frontend_url}/affiliate",
    )
    result = await _deliver(step, recipient["email"], message)

    logger.info(f"Threshold email sent for affiliate {data['affiliate_id']}")
    return {"status": "sent", "email_id": result.get("id")}


@inngest_client.create_function(
    fn_id="affiliate-payout-result-email",
    trigger=TriggerEvent(event=Events.AFFILIATE_PAYOUT_RESULT),
    retries=3,
)
async def payout_result_email_fn(ctx, step):
    """Tell an affiliate their payout was sent or denied."""
    data = ctx.event.data
    recipient = await _resolve(step, data["affiliate_id"])

    message = render_payout_result(recipient["name"], data["payout_amount"], data["status"])
    result = await _deliver(step, recipient["email"], message)

    logger.info(f"Payout {data['status']} email sent for affiliate {data['affiliate_id']}")
    return {"status": "sent", "email_id": result.get("id")}


@inngest_client.create_function(
    fn_id="affiliate-welcome-email",
    trigger=TriggerEvent(event=Events.AFFILIATE_WELCOME),
    retries=3,
)
async def affiliate_welcome_email_fn(ctx, step):
    """Welcome a new affiliate with their referral link."""
    data = ctx.event.data
    recipient = await _resolve(step, data["affiliate_id"])

    config = get_program_config()
    referral_code = data.get("referral_code") or recipient["referral_code"]
    message = render_affiliate_welcome(
        recipient["name"],
        referral_code,
        f"{config.frontend_url}/?ref={referral_code}",
    )
    result = await _deliver(step, recipient["email"], message)

    return {"status": "sent", "email_id": result.get("id")}


@inngest_client.create_function(
    fn_id="refund-processed-email",
    trigger=TriggerEvent(event=Events.REFUND_PROCESSED),
    retries=3,
)
async def refund_processed_email_fn(ctx, step):
    """Confirm a refund to the customer."""
    data = ctx.event.data
    message = render_refund_processed(
        data["refund_amount_cents"],
        data.get("currency") or "usd",
        data["refund_id"],
    )
    result = await _deliver(step, data["customer_email"], message)

    logger.info(f"Refund email sent for {data['refund_id']}")
    return {"status": "sent", "email_id": result.get("id")}


notification_functions = [
    threshold_reached_email_fn,
    payout_result_email_fn,
    affiliate_welcome_email_fn,
    refund_processed_email_fn,
]
