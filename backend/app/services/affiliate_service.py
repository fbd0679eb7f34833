"""
Affiliate Service

Central service for the ThreadPosts affiliate commission ledger.
Attributes paying customers to referring affiliates, accrues commission,
reverses it on refunds and settles pending balances through Stripe Connect.

Key features:
- Affiliate registry with unique, editable referral codes
- Click tracking with per-IP rate limiting
- Exactly-once conversion and commission per upstream payment id
  (checkout session or invoice), whichever delivery path sees it first
- Proportional commission reversal on refunds, once per refund id
- Self-service payouts via Stripe Connect transfers, plus an admin
  approval flow for manual payout requests

Balances are only ever changed server-side: apply_balance_delta() runs a
single UPDATE floored at zero, and settle_payout() records a transfer and
debits the pending balance in the same transaction.
"""

import os
import re
import logging
import secrets
import string
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timedelta, timezone
import stripe
from postgrest.exceptions import APIError

from app.config import ProgramConfig, get_program_config
from app.database import get_supabase_service, is_unique_violation
from app.services.notification_service import NotificationService, get_notification_service
from app.utils.errors import (
    AlreadyExistsError,
    BelowThresholdError,
    ExternalServiceError,
    InvalidPayoutTransitionError,
    InvalidReferralCodeError,
    NotFoundError,
    OnboardingRequiredError,
    PreconditionFailedError,
    ReferralCodeTakenError,
)

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

# =============================================================================
# CONSTANTS
# =============================================================================

REFERRAL_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
REFERRAL_CODE_MIN_LENGTH = 4
REFERRAL_CODE_MAX_LENGTH = 20
GENERATED_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10

USER_AGENT_MAX_LENGTH = 500

PAYOUT_STATUS_PENDING = "pending"
PAYOUT_STATUS_PAID = "paid"
PAYOUT_STATUS_DENIED = "denied"
PAYOUT_STATUS_COMPLETED = "completed"
ADMIN_PAYOUT_STATUSES = (PAYOUT_STATUS_PAID, PAYOUT_STATUS_DENIED)

# Initial subscription charge, already covered by checkout.session.completed
INITIAL_BILLING_REASON = "subscription_create"

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value: Any) -> Decimal:
    """Convert a DB/Stripe amount to a two-decimal Decimal. None becomes 0."""
    if value is None:
        return ZERO.quantize(CENT)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def cents_to_money(cents: Optional[int]) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def normalize_referral_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def validate_referral_code(code: Optional[str]) -> str:
    """
    Validate and normalize a user-chosen referral code.

    Returns:
        The upper-cased code

    Raises:
        InvalidReferralCodeError: If length or characters are invalid
    """
    normalized = normalize_referral_code(code)
    if len(normalized) < REFERRAL_CODE_MIN_LENGTH:
        raise InvalidReferralCodeError(
            f"Referral code must be at least {REFERRAL_CODE_MIN_LENGTH} characters"
        )
    if len(normalized) > REFERRAL_CODE_MAX_LENGTH:
        raise InvalidReferralCodeError(
            f"Referral code must be at most {REFERRAL_CODE_MAX_LENGTH} characters"
        )
    if not REFERRAL_CODE_PATTERN.match(normalized):
        raise InvalidReferralCodeError(
            "Only letters, numbers, underscores and hyphens allowed"
        )
    return normalized


def _row(response) -> Optional[Dict[str, Any]]:
    """First row of a PostgREST response, tolerating None and list payloads."""
    if response is None:
        return None
    data = getattr(response, "data", None)
    if not data:
        return None
    if isinstance(data, list):
        return data[0]
    return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stripe_id(value: Any) -> Optional[str]:
    """Id of a Stripe reference that may be expanded."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class AffiliateService:
    """
    Central affiliate ledger service.

    Usage:
        affiliate_service = get_affiliate_service()

        # Opt in
        affiliate = await affiliate_service.create_affiliate(user_id)

        # Track a ?ref= visit
        affiliate_id = await affiliate_service.track_referral_click(
            referral_code="JANE2024",
            source="https://twitter.com/...",
            ip_address="1.2.3.4",
            user_agent="Mozilla/5.0 ..."
        )

        # Paid checkout (called from both the confirm endpoint and the webhook)
        await affiliate_service.handle_checkout_completed(session)

        # Refund
        await affiliate_service.reverse_commission(
            customer_email="buyer@example.com",
            refund_amount=Decimal("5.00"),
            refund_id="re_xxx"
        )

        # Payout
        result = await affiliate_service.request_payout(affiliate_id)
    """

    def __init__(
        self,
        supabase=None,
        stripe_client=None,
        notifications: Optional[NotificationService] = None,
        config: Optional[ProgramConfig] = None,
    ):
        self.supabase = supabase or get_supabase_service()
        if self.supabase is None:
            logger.error("Failed to initialize Supabase client for AffiliateService")
        self.stripe = stripe_client or stripe
        self.notifications = notifications or get_notification_service()
        self.config = config or get_program_config()

    # =========================================================================
    # AFFILIATE REGISTRY
    # =========================================================================

    async def get_affiliate_by_id(self, affiliate_id: str) -> Optional[Dict[str, Any]]:
        """Get affiliate record by ID."""
        if not affiliate_id:
            return None
        try:
            response = self.supabase.table("affiliates").select("*").eq(
                "id", affiliate_id
            ).maybe_single().execute()
            return _row(response)
        except APIError as e:
            # Malformed ids from client-held tokens land here (invalid uuid)
            logger.warning(f"Error getting affiliate by ID {affiliate_id}: {e}")
            return None

    async def get_affiliate_by_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get affiliate record for a user, if they are an affiliate."""
        response = self.supabase.table("affiliates").select("*").eq(
            "user_id", user_id
        ).maybe_single().execute()
        return _row(response)

    async def get_affiliate_by_code(self, referral_code: str) -> Optional[Dict[str, Any]]:
        """Get affiliate record by referral code (case-insensitive)."""
        code = normalize_referral_code(referral_code)
        if not code:
            return None
        response = self.supabase.table("affiliates").select("*").eq(
            "referral_code", code
        ).maybe_single().execute()
        return _row(response)

    def commission_rate_for(self, affiliate: Dict[str, Any]) -> Decimal:
        """Commission percentage for an affiliate, falling back to the program default."""
        rate = affiliate.get("commission_rate")
        if rate is None:
            return self.config.default_commission_rate
        try:
            return Decimal(str(rate))
        except Exception:
            logger.warning(f"Malformed commission_rate {rate!r} for affiliate {affiliate.get('id')}")
            return self.config.default_commission_rate

    def payout_threshold_for(self, affiliate: Dict[str, Any]) -> Decimal:
        """Minimum payout for an affiliate, falling back to the program default."""
        threshold = affiliate.get("min_payout_threshold")
        if threshold is None:
            return to_money(self.config.default_min_payout_threshold)
        try:
            return to_money(threshold)
        except Exception:
            logger.warning(f"Malformed min_payout_threshold {threshold!r} for affiliate {affiliate.get('id')}")
            return to_money(self.config.default_min_payout_threshold)

    async def create_affiliate(
        self,
        user_id: str,
        referral_code: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Enroll a user in the affiliate program.

        Args:
            user_id: The user opting in
            referral_code: Optional code of their choosing; generated if omitted

        Returns:
            The created affiliate record

        Raises:
            AlreadyExistsError: If the user already has an affiliate row
            InvalidReferralCodeError: If the supplied code is malformed
            ReferralCodeTakenError: If the supplied code belongs to someone else
        """
        existing = await self.get_affiliate_by_user(user_id)
        if existing:
            raise AlreadyExistsError()

        chosen_code = validate_referral_code(referral_code) if referral_code else None
        if chosen_code and await self._is_code_taken(chosen_code):
            raise ReferralCodeTakenError(chosen_code)

        affiliate = None
        for attempt in range(MAX_CODE_ATTEMPTS):
            code = chosen_code or await self._generate_referral_code()
            affiliate_data = {
                "user_id": user_id,
                "referral_code": code,
                "commission_rate": float(self.config.default_commission_rate),
                "min_payout_threshold": float(self.config.default_min_payout_threshold),
                "pending_balance": 0,
                "total_earnings": 0,
                "stripe_connect_onboarded": False,
            }
            try:
                response = self.supabase.table("affiliates").insert(affiliate_data).execute()
                affiliate = _row(response)
                break
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                if "referral_code" not in str(e):
                    # Lost the race against a concurrent opt-in by the same user
                    raise AlreadyExistsError()
                if chosen_code:
                    raise ReferralCodeTakenError(chosen_code)
                logger.info(f"Generated referral code {code} collided, retrying (attempt {attempt + 1})")

        if not affiliate:
            raise RuntimeError("Could not allocate a unique referral code")

        logger.info(
            f"New affiliate: user={user_id}, affiliate={affiliate['id']}, "
            f"code={affiliate['referral_code']}"
        )

        await self.notifications.send_affiliate_welcome(
            affiliate["id"], affiliate["referral_code"]
        )

        return affiliate

    async def update_referral_code(self, affiliate_id: str, new_code: str) -> Dict[str, Any]:
        """
        Change an affiliate's referral code.

        Raises:
            InvalidReferralCodeError: Code fails the format/length rule
            ReferralCodeTakenError: Another affiliate owns the normalized code
            NotFoundError: Unknown affiliate
        """
        code = validate_referral_code(new_code)

        if await self._is_code_taken(code, exclude_affiliate_id=affiliate_id):
            raise ReferralCodeTakenError(code)

        try:
            response = self.supabase.table("affiliates").update({
                "referral_code": code,
            }).eq("id", affiliate_id).execute()
        except APIError as e:
            if is_unique_violation(e):
                raise ReferralCodeTakenError(code)
            raise

        affiliate = _row(response)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        logger.info(f"Affiliate {affiliate_id} referral code changed to {code}")
        return affiliate

    async def apply_balance_delta(
        self,
        affiliate_id: str,
        pending_delta: Decimal,
        total_delta: Decimal
    ) -> Dict[str, Any]:
        """
        Atomically add deltas to pending_balance and total_earnings.

        Runs server-side as one UPDATE with both results floored at zero,
        so concurrent accruals for the same affiliate cannot lose updates.

        Returns:
            The updated affiliate row
        """
        response = self.supabase.rpc("apply_affiliate_balance_delta", {
            "p_affiliate_id": affiliate_id,
            "p_pending_delta": str(to_money(pending_delta)),
            "p_total_delta": str(to_money(total_delta)),
        }).execute()

        affiliate = _row(response)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        logger.debug(
            f"Balance delta applied to {affiliate_id}: pending {pending_delta:+}, total {total_delta:+} "
            f"-> pending={affiliate.get('pending_balance')}, total={affiliate.get('total_earnings')}"
        )
        return affiliate

    # =========================================================================
    # ATTRIBUTION TRACKING
    # =========================================================================

    async def track_referral_click(
        self,
        referral_code: Optional[str],
        source: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[str]:
        """
        Record a ?ref= visit and return the affiliate id to persist client-side.

        Unknown codes and storage errors return None; a bad code must never
        break navigation. Repeat clicks from the same IP inside the rate-limit
        window are not recorded but still return the affiliate id.

        Returns:
            The affiliate id, or None if the code does not resolve
        """
        try:
            affiliate = await self.get_affiliate_by_code(referral_code)
            if not affiliate:
                logger.info(f"Click with unknown referral code: {referral_code!r}")
                return None

            affiliate_id = affiliate["id"]
            client_ip = ip_address or "unknown"

            window_start = _utcnow() - timedelta(hours=self.config.click_window_hours)
            recent = self.supabase.table("referral_clicks").select("id").eq(
                "affiliate_id", affiliate_id
            ).eq(
                "ip_address", client_ip
            ).gte(
                "created_at", window_start.isoformat()
            ).limit(1).execute()

            if recent and recent.data:
                logger.info(f"Rate limited duplicate click: affiliate={affiliate_id}, ip={client_ip}")
                return affiliate_id

            try:
                self.supabase.table("referral_clicks").insert({
                    "affiliate_id": affiliate_id,
                    "ip_address": client_ip,
                    "user_agent": (user_agent or "unknown")[:USER_AGENT_MAX_LENGTH],
                    "source": source or "direct",
                }).execute()
                logger.info(f"Click tracked: affiliate={affiliate_id}")
            except APIError as e:
                logger.error(f"Error recording click for affiliate {affiliate_id}: {e}")

            return affiliate_id

        except Exception as e:
            logger.error(f"Error tracking referral click: {e}", exc_info=True)
            return None

    async def validate_affiliate_token(self, affiliate_id: Optional[str]) -> Optional[str]:
        """
        Re-validate a client-held attribution token.

        Returns:
            The affiliate id if it exists, otherwise None
        """
        if not affiliate_id:
            return None
        affiliate = await self.get_affiliate_by_id(affiliate_id.strip())
        return affiliate["id"] if affiliate else None

    # =========================================================================
    # CONVERSION RECORDING
    # =========================================================================

    async def record_conversion_if_absent(
        self,
        affiliate_id: str,
        user_id: str
    ) -> Dict[str, Any]:
        """
        Bind a referred user to an affiliate exactly once.

        Safe to call from both the synchronous confirm path and the webhook:
        an existing (affiliate_id, user_id) row or a unique violation on
        insert both yield created=False.

        Returns:
            {"created": bool, "conversion": row or None}
        """
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            logger.warning(f"Conversion for unknown affiliate {affiliate_id}, skipping")
            return {"created": False, "conversion": None}

        if affiliate.get("user_id") == user_id:
            # Business rule unresolved: flagged, blocked only when configured
            logger.warning(f"Self-referral conversion: affiliate={affiliate_id}, user={user_id}")
            if self.config.block_self_referrals:
                return {"created": False, "conversion": None}

        existing = await self._get_conversion(affiliate_id, user_id)
        if existing:
            logger.info(f"Conversion already recorded: affiliate={affiliate_id}, user={user_id}")
            return {"created": False, "conversion": existing}

        try:
            response = self.supabase.table("referral_conversions").insert({
                "affiliate_id": affiliate_id,
                "referred_user_id": user_id,
            }).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.info(f"Conversion inserted concurrently: affiliate={affiliate_id}, user={user_id}")
            return {"created": False, "conversion": await self._get_conversion(affiliate_id, user_id)}

        conversion = _row(response)
        logger.info(f"Conversion recorded: affiliate={affiliate_id}, user={user_id}")
        return {"created": True, "conversion": conversion}

    async def _get_conversion(self, affiliate_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        response = self.supabase.table("referral_conversions").select("*").eq(
            "affiliate_id", affiliate_id
        ).eq(
            "referred_user_id", user_id
        ).maybe_single().execute()
        return _row(response)

    # =========================================================================
    # COMMISSION ACCRUAL
    # =========================================================================

    def compute_commission(self, affiliate: Dict[str, Any]) -> Decimal:
        """Commission for one subscription charge: base price x affiliate rate."""
        rate = self.commission_rate_for(affiliate)
        return to_money(self.config.subscription_price * rate / Decimal(100))

    async def accrue_commission(
        self,
        affiliate_id: str,
        upstream_payment_id: str,
        amount: Decimal,
        conversion_id: Optional[str] = None,
        invoice_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Credit commission for one upstream payment, at most once.

        The (affiliate_id, stripe_payment_id) pair is claimed by inserting the
        earning row first; a unique violation means another delivery path got
        there first. Only the claimant moves the balances.

        Args:
            affiliate_id: The affiliate to credit
            upstream_payment_id: Checkout session id or invoice id (idempotency key)
            amount: Commission amount in dollars
            conversion_id: Optional referral_conversions row this earning belongs to
            invoice_id: Stripe invoice that collected the payment, so refunds
                of its charge can find this earning

        Returns:
            {"applied": bool, "new_pending_balance": Decimal or None, "threshold_crossed": bool}
        """
        amount = to_money(amount)
        result = {"applied": False, "new_pending_balance": None, "threshold_crossed": False}

        if not upstream_payment_id:
            logger.warning(f"Accrual for affiliate {affiliate_id} without payment id, skipping")
            return result
        if amount <= ZERO:
            logger.warning(f"Non-positive commission {amount} for {upstream_payment_id}, skipping")
            return result

        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            logger.warning(f"Accrual for unknown affiliate {affiliate_id}, skipping")
            return result

        result["new_pending_balance"] = to_money(affiliate.get("pending_balance"))

        if await self._get_earning(affiliate_id, upstream_payment_id):
            logger.info(f"Earning already recorded for payment {upstream_payment_id}, skipping")
            return result

        try:
            earning_response = self.supabase.table("affiliate_earnings").insert({
                "affiliate_id": affiliate_id,
                "amount": float(amount),
                "stripe_payment_id": upstream_payment_id,
                "stripe_invoice_id": invoice_id,
                "conversion_id": conversion_id,
            }).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.info(f"Earning for payment {upstream_payment_id} recorded concurrently, skipping")
            return result

        earning = _row(earning_response)

        try:
            updated = await self.apply_balance_delta(affiliate_id, amount, amount)
        except Exception:
            # Release the idempotency key so a redelivery can retry
            if earning:
                self.supabase.table("affiliate_earnings").delete().eq("id", earning["id"]).execute()
            raise

        new_balance = to_money(updated.get("pending_balance"))
        previous_balance = new_balance - amount
        threshold = self.payout_threshold_for(updated)
        crossed = previous_balance < threshold <= new_balance

        logger.info(
            f"Commission added: affiliate={affiliate_id}, payment={upstream_payment_id}, "
            f"amount={amount}, pending={new_balance}"
        )

        if crossed:
            logger.info(f"Affiliate {affiliate_id} crossed payout threshold {threshold}")
            try:
                await self.notifications.send_threshold_reached(affiliate_id, new_balance, threshold)
            except Exception as e:
                logger.error(f"Failed to send threshold notification for {affiliate_id}: {e}")

        result.update({"applied": True, "new_pending_balance": new_balance, "threshold_crossed": crossed})
        return result

    async def _get_earning(self, affiliate_id: str, payment_id: str) -> Optional[Dict[str, Any]]:
        response = self.supabase.table("affiliate_earnings").select("*").eq(
            "affiliate_id", affiliate_id
        ).eq(
            "stripe_payment_id", payment_id
        ).maybe_single().execute()
        return _row(response)

    async def process_paid_checkout(
        self,
        session_id: str,
        affiliate_id: Optional[str],
        user_id: Optional[str],
        payment_status: Optional[str],
        invoice_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Conversion + accrual for a completed checkout session.

        Shared by the synchronous confirm endpoint and the
        checkout.session.completed webhook; both are keyed by session_id.
        invoice_id is the subscription's first invoice, kept on the earning
        so a refund of that charge links back to it.
        """
        summary = {"conversion_created": False, "commission_applied": False}

        if payment_status != "paid":
            logger.info(f"Checkout {session_id} payment_status={payment_status}, skipping commission")
            return summary

        if not affiliate_id or not user_id:
            return summary

        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            logger.warning(f"Checkout {session_id} references unknown affiliate {affiliate_id}")
            return summary

        conversion = await self.record_conversion_if_absent(affiliate_id, user_id)
        summary["conversion_created"] = conversion["created"]

        if affiliate.get("user_id") == user_id and self.config.block_self_referrals:
            return summary

        conversion_row = conversion.get("conversion") or {}
        accrual = await self.accrue_commission(
            affiliate_id=affiliate_id,
            upstream_payment_id=session_id,
            amount=self.compute_commission(affiliate),
            conversion_id=conversion_row.get("id"),
            invoice_id=invoice_id,
        )
        summary["commission_applied"] = accrual["applied"]
        summary["new_pending_balance"] = accrual["new_pending_balance"]
        return summary

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a checkout.session.completed payload (subscription mode only)."""
        session_id = session.get("id")
        if session.get("mode") not in (None, "subscription"):
            logger.info(f"Checkout {session_id} is not a subscription checkout, skipping")
            return {"conversion_created": False, "commission_applied": False}

        metadata = session.get("metadata") or {}
        return await self.process_paid_checkout(
            session_id=session_id,
            affiliate_id=metadata.get("affiliate_id"),
            user_id=metadata.get("user_id"),
            payment_status=session.get("payment_status"),
            invoice_id=_stripe_id(session.get("invoice")),
        )

    async def handle_invoice_paid(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        """
        Accrue commission for a recurring subscription invoice.

        The first invoice of a subscription (billing_reason=subscription_create)
        is the same charge the checkout session already accrued, so it is skipped.
        """
        invoice_id = invoice.get("id")
        billing_reason = invoice.get("billing_reason")
        result = {"applied": False, "new_pending_balance": None, "threshold_crossed": False}

        if billing_reason == INITIAL_BILLING_REASON:
            logger.info(f"Invoice {invoice_id} is the initial subscription charge, already handled by checkout")
            return result

        if (invoice.get("amount_paid") or 0) <= 0:
            logger.info(f"Invoice {invoice_id} has no paid amount, skipping")
            return result

        metadata = self._invoice_subscription_metadata(invoice)
        affiliate_id = metadata.get("affiliate_id")
        if not affiliate_id:
            return result

        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            logger.warning(f"Invoice {invoice_id} references unknown affiliate {affiliate_id}")
            return result

        logger.info(
            f"Processing recurring payment: invoice={invoice_id}, affiliate={affiliate_id}, "
            f"billing_reason={billing_reason}"
        )
        return await self.accrue_commission(
            affiliate_id=affiliate_id,
            upstream_payment_id=invoice_id,
            amount=self.compute_commission(affiliate),
            invoice_id=invoice_id,
        )

    def _invoice_subscription_metadata(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        """Subscription metadata for an invoice, across old and new invoice shapes."""
        details = ((invoice.get("parent") or {}).get("subscription_details") or {})
        if details.get("metadata"):
            return dict(details["metadata"])

        subscription_id = invoice.get("subscription") or details.get("subscription")
        if not subscription_id:
            return {}
        if isinstance(subscription_id, dict):
            return dict(subscription_id.get("metadata") or {})

        subscription = self.stripe.Subscription.retrieve(subscription_id)
        return dict(subscription.get("metadata") or {})

    # =========================================================================
    # COMMISSION REVERSAL
    # =========================================================================

    async def reverse_commission(
        self,
        customer_email: Optional[str],
        refund_amount: Decimal,
        refund_id: Optional[str],
        payment_reference: Optional[str] = None,
        reason: str = "refund"
    ) -> Dict[str, Any]:
        """
        Claw back commission proportional to a refund.

        When payment_reference matches a recorded earning, that earning's
        affiliate is charged and the deduction links back to it. Otherwise the
        chain is customer email -> profile user id -> most recent conversion ->
        affiliate. Any missing link is a no-op (not every customer was referred).

        Args:
            customer_email: Email on the refunded payment
            refund_amount: Refunded amount in dollars (partial refunds allowed)
            refund_id: Stripe refund id, the idempotency key
            payment_reference: Session or invoice id of the refunded payment
            reason: Free-text reason stored on the deduction

        Returns:
            {"applied": bool, "deduction": Decimal or None, "affiliate_id": str or None}
        """
        result = {"applied": False, "deduction": None, "affiliate_id": None}

        earning = await self._find_earning(payment_reference) if payment_reference else None
        if earning:
            affiliate_id = earning["affiliate_id"]
        else:
            affiliate_id = await self._current_referrer(customer_email)
            if not affiliate_id:
                return result

        result["affiliate_id"] = affiliate_id

        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            return result

        if refund_id and await self._get_deduction(affiliate_id, refund_id):
            logger.info(f"Refund {refund_id} already reversed for affiliate {affiliate_id}")
            return result

        deduction = to_money(to_money(refund_amount) * self.commission_rate_for(affiliate) / Decimal(100))
        if deduction <= ZERO:
            return result

        original_earning_id = earning["id"] if earning else None

        try:
            deduction_response = self.supabase.table("affiliate_deductions").insert({
                "affiliate_id": affiliate_id,
                "amount": float(deduction),
                "reason": reason,
                "original_earning_id": original_earning_id,
                "refund_id": refund_id,
            }).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.info(f"Refund {refund_id} reversed concurrently for affiliate {affiliate_id}")
            return result

        deduction_row = _row(deduction_response)

        try:
            updated = await self.apply_balance_delta(affiliate_id, -deduction, -deduction)
        except Exception:
            if deduction_row:
                self.supabase.table("affiliate_deductions").delete().eq("id", deduction_row["id"]).execute()
            raise

        logger.info(
            f"Commission reversed: affiliate={affiliate_id}, refund={refund_id}, "
            f"deduction={deduction}, pending={updated.get('pending_balance')}"
        )
        result.update({"applied": True, "deduction": deduction})
        return result

    async def _get_deduction(self, affiliate_id: str, refund_id: str) -> Optional[Dict[str, Any]]:
        response = self.supabase.table("affiliate_deductions").select("id").eq(
            "affiliate_id", affiliate_id
        ).eq(
            "refund_id", refund_id
        ).maybe_single().execute()
        return _row(response)

    async def _find_earning(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        """Earning for a session or invoice id, whichever column it was recorded under."""
        for column in ("stripe_payment_id", "stripe_invoice_id"):
            response = self.supabase.table("affiliate_earnings").select("*").eq(
                column, payment_reference
            ).limit(1).execute()
            earning = _row(response)
            if earning:
                return earning
        return None

    async def _current_referrer(self, customer_email: Optional[str]) -> Optional[str]:
        """Affiliate of the customer's most recent conversion."""
        if not customer_email:
            return None

        profile = _row(self.supabase.table("profiles").select("user_id").eq(
            "email", customer_email.strip()
        ).maybe_single().execute())
        if not profile:
            logger.info(f"No profile for refunded customer {customer_email}, nothing to reverse")
            return None

        conversion = _row(self.supabase.table("referral_conversions").select(
            "id, affiliate_id"
        ).eq(
            "referred_user_id", profile["user_id"]
        ).order("converted_at", desc=True).limit(1).execute())
        if not conversion:
            logger.info(f"Refunded customer {customer_email} was not referred")
            return None
        return conversion["affiliate_id"]

    def _payment_invoice_id(self, payment_intent: Any) -> Optional[str]:
        """Invoice behind a payment intent, or None when it has none or cannot be read."""
        if not payment_intent:
            return None
        if isinstance(payment_intent, dict):
            intent = payment_intent
        else:
            try:
                intent = self.stripe.PaymentIntent.retrieve(payment_intent)
            except Exception as e:
                logger.warning(f"Could not retrieve payment intent {payment_intent}: {e}")
                return None
        return _stripe_id(intent.get("invoice"))

    async def handle_charge_refunded(self, charge: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Handle a charge.refunded payload.

        Every refund on the charge is reversed once; refunds already reversed
        (for example by the admin refund path) are skipped by refund id.
        The charge's invoice, read from the charge or its payment intent,
        identifies the earning being refunded.
        """
        charge_id = charge.get("id")
        refunds = (charge.get("refunds") or {}).get("data") or []
        if not refunds and charge_id:
            refunds = list(self.stripe.Refund.list(charge=charge_id).data)

        payment_reference = (
            _stripe_id(charge.get("invoice"))
            or self._payment_invoice_id(charge.get("payment_intent"))
        )

        customer_email = await self._charge_customer_email(charge)
        if not customer_email and not payment_reference:
            logger.info(f"Refunded charge {charge_id} has no customer email, skipping reversal")
            return []

        results = []
        for refund in refunds:
            if refund.get("status") in ("failed", "canceled"):
                continue
            results.append(await self.reverse_commission(
                customer_email=customer_email,
                refund_amount=cents_to_money(refund.get("amount")),
                refund_id=refund.get("id"),
                payment_reference=payment_reference,
            ))
        return results

    async def _charge_customer_email(self, charge: Dict[str, Any]) -> Optional[str]:
        email = (charge.get("billing_details") or {}).get("email") or charge.get("receipt_email")
        if email:
            return email
        customer_id = charge.get("customer")
        if not customer_id:
            return None
        customer = self.stripe.Customer.retrieve(customer_id)
        return customer.get("email")

    async def issue_refund(
        self,
        payment_intent_id: str,
        customer_email: Optional[str] = None,
        amount_cents: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Admin refund: refund a payment, email the customer, reverse commission.

        Args:
            payment_intent_id: The payment to refund
            customer_email: Customer to notify and resolve the affiliate from
            amount_cents: Partial refund amount; full refund when omitted

        Raises:
            ExternalServiceError: If Stripe rejects the refund (nothing reversed)
        """
        params = {
            "payment_intent": payment_intent_id,
            "reason": "requested_by_customer",
        }
        if amount_cents and amount_cents > 0:
            params["amount"] = amount_cents

        try:
            refund = self.stripe.Refund.create(**params)
        except Exception as e:
            logger.error(f"Refund failed for payment {payment_intent_id}: {e}")
            raise ExternalServiceError(f"Refund failed: {e}")

        refund_id = refund.get("id")
        refunded_cents = refund.get("amount") or 0
        currency = refund.get("currency") or self.config.payout_currency
        logger.info(f"Refund processed: {refund_id}, amount={refunded_cents}, payment={payment_intent_id}")

        if not customer_email:
            customer_email = self._payment_intent_email(payment_intent_id)

        reversal = {"applied": False, "deduction": None, "affiliate_id": None}
        if customer_email:
            await self.notifications.send_refund_processed(
                customer_email, refunded_cents, refund_id, currency
            )
            try:
                reversal = await self.reverse_commission(
                    customer_email=customer_email,
                    refund_amount=cents_to_money(refunded_cents),
                    refund_id=refund_id,
                    payment_reference=self._payment_invoice_id(payment_intent_id),
                )
            except Exception as e:
                # charge.refunded will retry the reversal under the same refund id
                logger.error(f"Commission reversal failed for refund {refund_id}: {e}", exc_info=True)

        return {
            "refund_id": refund_id,
            "amount_cents": refunded_cents,
            "currency": currency,
            "reversal": reversal,
        }

    def _payment_intent_email(self, payment_intent_id: str) -> Optional[str]:
        try:
            intent = self.stripe.PaymentIntent.retrieve(payment_intent_id, expand=["customer"])
        except Exception as e:
            logger.warning(f"Could not retrieve payment intent {payment_intent_id}: {e}")
            return None
        customer = intent.get("customer")
        if isinstance(customer, dict) and customer.get("email"):
            return customer["email"]
        return intent.get("receipt_email")

    # =========================================================================
    # PAYOUT SETTLEMENT
    # =========================================================================

    async def request_payout(self, affiliate_id: str) -> Dict[str, Any]:
        """
        Transfer the full pending balance to the affiliate's connected account.

        Preconditions, in order: Connect onboarding complete, then balance at
        or above the payout threshold. The transfer is issued before anything
        is written; if it fails nothing is committed. The payout row and the
        balance debit are then written together by settle_affiliate_payout.

        Every settlement has its own Stripe transfer_group. A transfer already
        sitting in the current group was paid by an earlier attempt whose
        ledger write failed, so it is settled instead of paying again.

        Returns:
            {"amount": Decimal, "transfer_id": str, "payout": row, "already_settled": bool}

        Raises:
            NotFoundError, OnboardingRequiredError, BelowThresholdError, ExternalServiceError
        """
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        account_id = affiliate.get("stripe_connect_id")
        if not affiliate.get("stripe_connect_onboarded") or not account_id:
            raise OnboardingRequiredError()

        pending_balance = to_money(affiliate.get("pending_balance"))
        threshold = self.payout_threshold_for(affiliate)
        if pending_balance < threshold or pending_balance <= ZERO:
            raise BelowThresholdError(pending_balance, threshold)

        amount_cents = int((pending_balance * 100).to_integral_value(rounding=ROUND_FLOOR))
        transfer_group = await self._payout_transfer_group(affiliate_id)

        try:
            transfer = self._unsettled_transfer(transfer_group)
            if transfer:
                logger.warning(
                    f"Transfer {transfer.get('id')} in {transfer_group} was never recorded, "
                    f"settling it instead of creating a new one"
                )
            else:
                transfer = self.stripe.Transfer.create(
                    amount=amount_cents,
                    currency=self.config.payout_currency,
                    destination=account_id,
                    transfer_group=transfer_group,
                    metadata={
                        "affiliate_id": affiliate_id,
                        "user_id": affiliate.get("user_id"),
                    },
                    description="ThreadPosts affiliate commission payout",
                    idempotency_key=f"{transfer_group}-{amount_cents}",
                )
        except Exception as e:
            logger.error(f"Transfer failed for affiliate {affiliate_id}: {e}")
            raise ExternalServiceError(f"Payout transfer failed: {e}")

        transfer_id = transfer.get("id")
        amount = cents_to_money(transfer.get("amount") or amount_cents)
        logger.info(f"Transfer created: {transfer_id} for affiliate {affiliate_id}, amount={amount}")

        settlement = await self.settle_payout(affiliate_id, amount, transfer_id)
        payout = _row(self.supabase.table("affiliate_payouts").select("*").eq(
            "id", settlement["payout_id"]
        ).maybe_single().execute())

        if not settlement.get("applied"):
            logger.info(f"Transfer {transfer_id} already settled for affiliate {affiliate_id}")
            return {"amount": amount, "transfer_id": transfer_id, "payout": payout, "already_settled": True}

        logger.info(
            f"Payout completed: affiliate={affiliate_id}, amount={amount}, "
            f"pending={settlement.get('new_pending_balance')}, total={settlement.get('new_total_earnings')}"
        )

        await self.notifications.send_payout_result(affiliate_id, amount, PAYOUT_STATUS_COMPLETED)

        return {"amount": amount, "transfer_id": transfer_id, "payout": payout, "already_settled": False}

    async def settle_payout(self, affiliate_id: str, amount: Decimal, transfer_id: str) -> Dict[str, Any]:
        """
        Record a completed transfer and debit pending_balance in one commit.

        total_earnings is untouched; it already includes the paid-out commission.
        A transfer id that is already recorded comes back with applied=False.

        Returns:
            {"payout_id", "applied", "new_pending_balance", "new_total_earnings"}
        """
        try:
            response = self.supabase.rpc("settle_affiliate_payout", {
                "p_affiliate_id": affiliate_id,
                "p_amount": str(to_money(amount)),
                "p_transfer_id": transfer_id,
            }).execute()
        except Exception:
            logger.critical(
                f"Transfer {transfer_id} succeeded but ledger update failed for affiliate "
                f"{affiliate_id} (amount={amount}); the next payout request will settle it",
                exc_info=True
            )
            raise

        settlement = _row(response)
        if not settlement:
            raise NotFoundError("Affiliate", affiliate_id)
        return settlement

    async def _payout_transfer_group(self, affiliate_id: str) -> str:
        """
        Stripe transfer_group for the next settlement.

        The completed-payout count only moves when settle_affiliate_payout
        commits, so every attempt until then shares the same group.
        """
        response = self.supabase.table("affiliate_payouts").select(
            "id", count="exact"
        ).eq(
            "affiliate_id", affiliate_id
        ).eq(
            "status", PAYOUT_STATUS_COMPLETED
        ).execute()
        settled = response.count or 0
        return f"payout-{affiliate_id}-{settled}"

    def _unsettled_transfer(self, transfer_group: str) -> Optional[Dict[str, Any]]:
        transfers = self.stripe.Transfer.list(transfer_group=transfer_group, limit=1)
        data = list(transfers.data or [])
        return data[0] if data else None

    async def create_payout_request(self, affiliate_id: str) -> Dict[str, Any]:
        """
        Create a pending payout request for admin review.

        Raises:
            NotFoundError: Unknown affiliate
            BelowThresholdError: Balance under the threshold
            PreconditionFailedError: A request is already pending
        """
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        pending_balance = to_money(affiliate.get("pending_balance"))
        threshold = self.payout_threshold_for(affiliate)
        if pending_balance < threshold or pending_balance <= ZERO:
            raise BelowThresholdError(pending_balance, threshold)

        open_request = _row(self.supabase.table("affiliate_payouts").select("id").eq(
            "affiliate_id", affiliate_id
        ).eq(
            "status", PAYOUT_STATUS_PENDING
        ).limit(1).execute())
        if open_request:
            raise PreconditionFailedError(
                "A payout request is already pending review",
                details={"payout_id": open_request["id"]},
            )

        response = self.supabase.table("affiliate_payouts").insert({
            "affiliate_id": affiliate_id,
            "amount": float(pending_balance),
            "status": PAYOUT_STATUS_PENDING,
        }).execute()
        payout = _row(response)

        logger.info(f"Payout request created: affiliate={affiliate_id}, amount={pending_balance}")
        return payout

    async def set_payout_status(self, payout_id: str, status: str) -> Dict[str, Any]:
        """
        Admin decision on a pending payout request: pending -> paid | denied.

        Marking paid stamps paid_at. Both outcomes email the affiliate
        (best-effort). Terminal rows cannot change again.

        Raises:
            ValueError: status is not 'paid' or 'denied'
            NotFoundError: Unknown payout
            InvalidPayoutTransitionError: Payout is not pending
        """
        if status not in ADMIN_PAYOUT_STATUSES:
            raise ValueError(f"Invalid payout status: {status}")

        payout = _row(self.supabase.table("affiliate_payouts").select("*").eq(
            "id", payout_id
        ).maybe_single().execute())
        if not payout:
            raise NotFoundError("Payout", payout_id)

        if payout.get("status") != PAYOUT_STATUS_PENDING:
            raise InvalidPayoutTransitionError(payout_id, payout.get("status"))

        update_data = {"status": status}
        if status == PAYOUT_STATUS_PAID:
            update_data["paid_at"] = _utcnow().isoformat()

        # Conditional on still being pending so two admins cannot both decide
        response = self.supabase.table("affiliate_payouts").update(update_data).eq(
            "id", payout_id
        ).eq(
            "status", PAYOUT_STATUS_PENDING
        ).execute()
        updated = _row(response)
        if not updated:
            raise InvalidPayoutTransitionError(payout_id, "no longer pending")

        logger.info(f"Payout {payout_id} marked {status}")

        await self.notifications.send_payout_result(
            payout["affiliate_id"], to_money(payout.get("amount")), status
        )
        return updated

    # =========================================================================
    # STRIPE CONNECT
    # =========================================================================

    async def get_connect_onboarding_url(
        self,
        affiliate_id: str,
        email: Optional[str],
        return_url: str,
        refresh_url: str
    ) -> str:
        """
        Get a Stripe Connect onboarding link, creating the Express account if needed.

        Raises:
            NotFoundError: Unknown affiliate
            ExternalServiceError: Stripe call failed
        """
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        account_id = affiliate.get("stripe_connect_id")

        try:
            if not account_id:
                account = self.stripe.Account.create(
                    type="express",
                    country=self.config.connect_country,
                    email=email,
                    capabilities={
                        "transfers": {"requested": True},
                    },
                    metadata={
                        "affiliate_id": affiliate_id,
                        "platform": "threadposts",
                    },
                )
                account_id = account.get("id")

                self.supabase.table("affiliates").update({
                    "stripe_connect_id": account_id,
                    "stripe_connect_onboarded": False,
                }).eq("id", affiliate_id).execute()

                logger.info(f"Created Stripe Connect account {account_id} for affiliate {affiliate_id}")

            account_link = self.stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except APIError:
            raise
        except Exception as e:
            logger.error(f"Error creating onboarding link for affiliate {affiliate_id}: {e}")
            raise ExternalServiceError(f"Could not create onboarding link: {e}")

        return account_link.get("url")

    async def sync_connect_status(self, affiliate_id: str) -> Dict[str, bool]:
        """
        Refresh stripe_connect_onboarded from the connected account.

        Onboarded means details submitted, charges enabled and payouts enabled.

        Raises:
            NotFoundError: Unknown affiliate
            ExternalServiceError: Stripe call failed
        """
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        account_id = affiliate.get("stripe_connect_id")
        if not account_id:
            return {
                "onboarded": False,
                "details_submitted": False,
                "charges_enabled": False,
                "payouts_enabled": False,
            }

        try:
            account = self.stripe.Account.retrieve(account_id)
        except Exception as e:
            logger.error(f"Error retrieving Connect account {account_id}: {e}")
            raise ExternalServiceError(f"Could not retrieve Connect account: {e}")

        status = {
            "details_submitted": bool(account.get("details_submitted")),
            "charges_enabled": bool(account.get("charges_enabled")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
        }
        onboarded = all(status.values())

        if onboarded != bool(affiliate.get("stripe_connect_onboarded")):
            self.supabase.table("affiliates").update({
                "stripe_connect_onboarded": onboarded,
            }).eq("id", affiliate_id).execute()
            logger.info(f"Affiliate {affiliate_id} onboarding status changed to {onboarded}")

        return {"onboarded": onboarded, **status}

    async def handle_connect_account_updated(self, account: Dict[str, Any]) -> bool:
        """Handle account.updated for a connected account."""
        account_id = account.get("id")
        affiliate = _row(self.supabase.table("affiliates").select("id").eq(
            "stripe_connect_id", account_id
        ).maybe_single().execute())
        if not affiliate:
            return False
        await self.sync_connect_status(affiliate["id"])
        return True

    # =========================================================================
    # DASHBOARD & ADMIN READS
    # =========================================================================

    async def get_dashboard_data(self, affiliate_id: str) -> Dict[str, Any]:
        """Balances, settings and recent ledger lines for the affiliate dashboard."""
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)

        earnings = self.supabase.table("affiliate_earnings").select(
            "id, amount, stripe_payment_id, created_at"
        ).eq("affiliate_id", affiliate_id).order("created_at", desc=True).limit(20).execute()

        deductions = self.supabase.table("affiliate_deductions").select(
            "id, amount, reason, refund_id, created_at"
        ).eq("affiliate_id", affiliate_id).order("created_at", desc=True).limit(20).execute()

        payouts = self.supabase.table("affiliate_payouts").select(
            "id, amount, status, created_at, paid_at, stripe_transfer_id"
        ).eq("affiliate_id", affiliate_id).order("created_at", desc=True).limit(10).execute()

        conversions = self.supabase.table("referral_conversions").select(
            "id", count="exact"
        ).eq("affiliate_id", affiliate_id).execute()

        clicks = self.supabase.table("referral_clicks").select(
            "id", count="exact"
        ).eq("affiliate_id", affiliate_id).execute()

        total_clicks = clicks.count or 0
        total_conversions = conversions.count or 0

        return {
            "affiliate": {
                "id": affiliate["id"],
                "referral_code": affiliate["referral_code"],
                "referral_url": f"{self.config.frontend_url}/?ref={affiliate['referral_code']}",
                "commission_rate": float(self.commission_rate_for(affiliate)),
                "min_payout_threshold": float(self.payout_threshold_for(affiliate)),
                "stripe_connect_onboarded": bool(affiliate.get("stripe_connect_onboarded")),
            },
            "stats": {
                "pending_balance": float(to_money(affiliate.get("pending_balance"))),
                "total_earnings": float(to_money(affiliate.get("total_earnings"))),
                "total_clicks": total_clicks,
                "total_conversions": total_conversions,
                "conversion_rate": round(total_conversions / total_clicks * 100, 1) if total_clicks else 0,
            },
            "recent_earnings": earnings.data or [],
            "recent_deductions": deductions.data or [],
            "recent_payouts": payouts.data or [],
        }

    async def list_affiliates(self, page: int = 1, page_size: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """Paginated affiliates for the admin view."""
        offset = (page - 1) * page_size
        response = self.supabase.table("affiliates").select(
            "*", count="exact"
        ).order(
            "created_at", desc=True
        ).range(offset, offset + page_size - 1).execute()
        return response.data or [], response.count or 0

    async def list_payouts(
        self,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Paginated payout rows for the admin view."""
        query = self.supabase.table("affiliate_payouts").select("*", count="exact")
        if status:
            query = query.eq("status", status)
        offset = (page - 1) * page_size
        response = query.order(
            "created_at", desc=True
        ).range(offset, offset + page_size - 1).execute()
        return response.data or [], response.count or 0

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    async def _is_code_taken(self, code: str, exclude_affiliate_id: Optional[str] = None) -> bool:
        query = self.supabase.table("affiliates").select("id").eq("referral_code", code)
        if exclude_affiliate_id:
            query = query.neq("id", exclude_affiliate_id)
        response = query.limit(1).execute()
        return bool(response and response.data)

    async def _generate_referral_code(self) -> str:
        """Generate a random referral code not currently in use."""
        chars = string.ascii_uppercase + string.digits

        for _ in range(MAX_CODE_ATTEMPTS):
            code = "".join(secrets.choice(chars) for _ in range(GENERATED_CODE_LENGTH))
            if not await self._is_code_taken(code):
                return code

        # Insert-time unique constraint still guards this one
        return "".join(secrets.choice(chars) for _ in range(REFERRAL_CODE_MAX_LENGTH))


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_affiliate_service: Optional[AffiliateService] = None


def get_affiliate_service() -> AffiliateService:
    """Get singleton AffiliateService instance."""
    global _affiliate_service
    if _affiliate_service is None:
        _affiliate_service = AffiliateService()
    return _affiliate_service
