"""
Email Service

Transactional email for the affiliate program, delivered through the
Resend HTTP API. Rendering is kept next to delivery so the Inngest
functions only have to resolve recipients.
"""

import os
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
EMAIL_FROM = os.getenv("EMAIL_FROM", "ThreadPosts <hello@threadposts.com>")


def _money(amount: Any) -> str:
    return f"${Decimal(str(amount)):.2f}"


def _wrap(title: str, body: str) -> str:
    year = datetime.utcnow().year
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;\">"
        f"<h1 style=\"margin: 0 0 20px;\">{title}</h1>"
        f"{body}"
        f"<p style=\"color: #6b7280; font-size: 12px; margin-top: 30px;\">&copy; {year} ThreadPosts</p>"
        "</div>"
    )


def render_threshold_reached(name: Optional[str], new_balance: Any, threshold: Any, dashboard_url: str) -> Dict[str, str]:
    greeting = f"Hi {name}," if name else "Hi there,"
    return {
        "subject": "You've reached your payout threshold!",
        "html": _wrap(
            "Payout threshold reached",
            f"<p>{greeting}</p>"
            f"<p>Your pending balance is now <strong>{_money(new_balance)}</strong>, "
            f"which meets the {_money(threshold)} minimum.</p>"
            f"<p><a href=\"{dashboard_url}\">Request your payout</a></p>"
        ),
    }


def render_payout_result(name: Optional[str], amount: Any, status: str) -> Dict[str, str]:
    greeting = f"Hi {name}," if name else "Hi there,"
    if status in ("paid", "completed"):
        subject = f"Your payout of {_money(amount)} has been sent"
        body = (
            f"<p>{greeting}</p>"
            f"<p>Your affiliate payout of <strong>{_money(amount)}</strong> has been processed.</p>"
        )
    else:
        subject = "Update on your payout request"
        body = (
            f"<p>{greeting}</p>"
            f"<p>Your payout request of {_money(amount)} was not approved. "
            "Reply to this email if you have questions.</p>"
        )
    return {"subject": subject, "html": _wrap("Affiliate payout", body)}


def render_refund_processed(amount_cents: int, currency: str, refund_id: str) -> Dict[str, str]:
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    formatted = f"{symbol}{amount_cents / 100:.2f}"
    return {
        "subject": f"Refund of {formatted} has been processed",
        "html": _wrap(
            "Refund processed",
            f"<p>We've processed a refund of <strong>{formatted}</strong> to your account.</p>"
            f"<p>Refund ID: {refund_id}</p>"
            "<p>It should appear within 5-10 business days, depending on your bank.</p>"
        ),
    }


def render_affiliate_welcome(name: Optional[str], referral_code: str, referral_url: str) -> Dict[str, str]:
    greeting = f"Hi {name}," if name else "Hi there,"
    return {
        "subject": "Welcome to the ThreadPosts affiliate program",
        "html": _wrap(
            "Welcome aboard",
            f"<p>{greeting}</p>"
            f"<p>Your referral code is <strong>{referral_code}</strong>.</p>"
            f"<p>Share your link: <a href=\"{referral_url}\">{referral_url}</a></p>"
        ),
    }


class EmailService:
    """Thin client over the Resend send endpoint."""

    def __init__(self, api_key: Optional[str] = None, sender: str = EMAIL_FROM):
        self._api_key = api_key or os.getenv("RESEND_API_KEY")
        self.sender = sender

    @property
    def is_available(self) -> bool:
        return bool(self._api_key)

    async def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        """
        Send one email.

        Returns:
            {"success": True, "id": ...} or {"success": False, "error": ...}
        """
        if not self.is_available:
            logger.warning(f"RESEND_API_KEY not configured, skipping email to {to}")
            return {"success": False, "error": "Email not configured"}

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json"
                    },
                    json={
                        "from": self.sender,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    }
                )

                if response.status_code >= 400:
                    logger.error(f"Resend API error {response.status_code}: {response.text}")
                    return {"success": False, "error": f"{response.status_code}: {response.text}"}

                data = response.json()
                logger.info(f"Email sent to {to}: {subject}")
                return {"success": True, "id": data.get("id")}

        except httpx.HTTPError as e:
            logger.error(f"HTTP error sending email to {to}: {e}")
            return {"success": False, "error": str(e)}


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get singleton EmailService instance."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
