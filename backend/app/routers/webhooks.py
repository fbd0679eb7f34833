"""
Webhooks Router - Stripe webhook handling

Handles incoming webhook events from Stripe for:
- Affiliate commissions (first checkout and recurring invoices)
- Commission reversal on refunds
- Stripe Connect (affiliate payouts)

Every event id is processed at most once; the ledger operations are
idempotent on their own keys as well, so Stripe retries are harmless.
"""

import os
import json
import logging
from fastapi import APIRouter, Request, HTTPException, Header
import stripe

from app.database import get_supabase_service, is_unique_violation
from app.services.affiliate_service import get_affiliate_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Initialize Stripe
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

RECURRING_INVOICE_EVENTS = ("invoice.paid", "invoice.payment_succeeded")


def _construct_event(payload: bytes, stripe_signature: str):
    if not STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured, skipping signature verification")
        try:
            return stripe.Event.construct_from(json.loads(payload), stripe.api_key)
        except Exception as e:
            logger.error(f"Error parsing webhook payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        return stripe.Webhook.construct_event(
            payload, stripe_signature, STRIPE_WEBHOOK_SECRET
        )
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except Exception as e:
        logger.error(f"Error verifying webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """
    Handle Stripe webhook events

    Events handled:
    - checkout.session.completed
    - invoice.paid / invoice.payment_succeeded
    - charge.refunded
    - account.updated
    """

    # Get raw body
    payload = await request.body()
    event = _construct_event(payload, stripe_signature)

    event_id = event.get("id")
    event_type = event.get("type")

    logger.info(f"Received Stripe webhook: {event_type} ({event_id})")

    supabase = get_supabase_service()

    # Check idempotency - have we already processed this event?
    existing = supabase.table("stripe_webhook_events").select("id").eq(
        "id", event_id
    ).maybe_single().execute()

    if existing and existing.data:
        logger.info(f"Event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    affiliate_service = get_affiliate_service()

    try:
        if event_type == "checkout.session.completed":
            session = event["data"]["object"]
            await affiliate_service.handle_checkout_completed(session)

        elif event_type in RECURRING_INVOICE_EVENTS:
            invoice = event["data"]["object"]
            await affiliate_service.handle_invoice_paid(invoice)

        # =====================================================================
        # REFUND EVENTS - Reverse affiliate commissions
        # =====================================================================
        elif event_type == "charge.refunded":
            charge = event["data"]["object"]
            await affiliate_service.handle_charge_refunded(charge)

        # =====================================================================
        # STRIPE CONNECT EVENTS - Affiliate payouts
        # =====================================================================
        elif event_type == "account.updated":
            account = event["data"]["object"]
            await affiliate_service.handle_connect_account_updated(account)

        else:
            logger.info(f"Unhandled event type: {event_type}")

    except Exception as e:
        logger.error(f"Error processing webhook {event_type}: {e}", exc_info=True)
        # Don't mark as processed so Stripe will retry
        raise HTTPException(status_code=500, detail="Processing error")

    # Mark event as processed (idempotency)
    try:
        supabase.table("stripe_webhook_events").insert({
            "id": event_id,
            "event_type": event_type,
            "payload": json.loads(payload),
        }).execute()
    except Exception as e:
        if not is_unique_violation(e):
            logger.error(f"Failed to record webhook event {event_id}: {e}")

    return {"status": "success"}
