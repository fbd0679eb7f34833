"""
Checkout Service

Creates Stripe Checkout sessions for the ThreadPosts subscription and
confirms them after redirect. Attribution travels in session and
subscription metadata; commission is only accrued once the session is paid.
"""

import os
import logging
from typing import Optional, Dict, Any
import stripe

from app.config import ProgramConfig, get_program_config
from app.services.affiliate_service import AffiliateService, get_affiliate_service
from app.utils.errors import ExternalServiceError, PreconditionFailedError

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")


class CheckoutService:
    """
    Usage:
        checkout_service = get_checkout_service()

        session = await checkout_service.create_checkout_session(
            user_id, email, affiliate_id=token_from_client
        )

        # After redirect back to the app
        result = await checkout_service.confirm_checkout(session_id, user_id)
    """

    def __init__(
        self,
        stripe_client=None,
        affiliate_service: Optional[AffiliateService] = None,
        config: Optional[ProgramConfig] = None,
    ):
        self.stripe = stripe_client or stripe
        self.affiliate_service = affiliate_service or get_affiliate_service()
        self.config = config or get_program_config()

    async def create_checkout_session(
        self,
        user_id: str,
        email: str,
        affiliate_id: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a subscription checkout session.

        The affiliate token is untrusted client state; it is re-validated
        and dropped if it no longer resolves. No ledger rows are written here.

        Returns:
            {"session_id": ..., "checkout_url": ...}
        """
        if not self.config.stripe_price_id:
            raise PreconditionFailedError("Subscription price is not configured", status_code=503)

        valid_affiliate_id = await self.affiliate_service.validate_affiliate_token(affiliate_id)
        if affiliate_id and not valid_affiliate_id:
            logger.info(f"Dropping invalid affiliate token {affiliate_id!r} for user {user_id}")

        metadata = {"user_id": user_id}
        if valid_affiliate_id:
            metadata["affiliate_id"] = valid_affiliate_id

        try:
            customers = self.stripe.Customer.list(email=email, limit=1)
            customer_id = customers.data[0].id if customers.data else None

            session_params = {
                "line_items": [{"price": self.config.stripe_price_id, "quantity": 1}],
                "mode": "subscription",
                "success_url": success_url or (
                    f"{self.config.frontend_url}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                "cancel_url": cancel_url or f"{self.config.frontend_url}/dashboard?checkout=canceled",
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            }
            if customer_id:
                session_params["customer"] = customer_id
            else:
                session_params["customer_email"] = email

            session = self.stripe.checkout.Session.create(**session_params)
        except Exception as e:
            logger.error(f"Error creating checkout session for user {user_id}: {e}")
            raise ExternalServiceError(f"Could not create checkout session: {e}")

        logger.info(
            f"Checkout session created: {session.id}, user={user_id}, affiliate={valid_affiliate_id}"
        )
        return {"session_id": session.id, "checkout_url": session.url}

    async def confirm_checkout(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """
        Synchronous post-checkout path.

        Retrieves the session and, if paid, runs the same conversion and
        accrual handler as the checkout.session.completed webhook. Whichever
        path runs second is a no-op.
        """
        try:
            session = self.stripe.checkout.Session.retrieve(session_id)
        except Exception as e:
            logger.error(f"Error retrieving checkout session {session_id}: {e}")
            raise ExternalServiceError(f"Could not retrieve checkout session: {e}")

        metadata = session.get("metadata") or {}
        if metadata.get("user_id") != user_id:
            logger.warning(f"User {user_id} tried to confirm checkout {session_id} of another user")
            raise PreconditionFailedError("Checkout session belongs to another user", status_code=403)

        result = await self.affiliate_service.handle_checkout_completed(session)
        return {
            "session_id": session_id,
            "payment_status": session.get("payment_status"),
            **result,
        }


_checkout_service: Optional[CheckoutService] = None


def get_checkout_service() -> CheckoutService:
    """Get singleton CheckoutService instance."""
    global _checkout_service
    if _checkout_service is None:
        _checkout_service = CheckoutService()
    return _checkout_service
