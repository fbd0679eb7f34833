"""
Notification Service

Fire-and-forget notifications triggered by the affiliate ledger.
Each method emits an Inngest event; the email itself is rendered and
delivered by app.inngest.functions.notifications. Nothing here raises.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from app.inngest.events import send_event, Events

logger = logging.getLogger(__name__)

Amount = Union[Decimal, float, int]


class NotificationService:
    """
    Usage:
        notifications = get_notification_service()
        await notifications.send_threshold_reached(affiliate_id, Decimal("25.00"), Decimal("25"))
    """

    async def send_threshold_reached(
        self,
        affiliate_id: str,
        new_balance: Amount,
        threshold: Amount
    ) -> bool:
        return await self._emit(Events.AFFILIATE_THRESHOLD_REACHED, {
            "affiliate_id": affiliate_id,
            "new_balance": float(new_balance),
            "threshold": float(threshold),
        })

    async def send_payout_result(
        self,
        affiliate_id: str,
        amount: Amount,
        status: str
    ) -> bool:
        return await self._emit(Events.AFFILIATE_PAYOUT_RESULT, {
            "affiliate_id": affiliate_id,
            "payout_amount": float(amount),
            "status": status,
        })

    async def send_refund_processed(
        self,
        customer_email: str,
        amount_cents: int,
        refund_id: str,
        currency: str = "usd"
    ) -> bool:
        return await self._emit(Events.REFUND_PROCESSED, {
            "customer_email": customer_email,
            "refund_amount_cents": amount_cents,
            "refund_id": refund_id,
            "currency": currency,
        })

    async def send_affiliate_welcome(
        self,
        affiliate_id: str,
        referral_code: str
    ) -> bool:
        return await self._emit(Events.AFFILIATE_WELCOME, {
            "affiliate_id": affiliate_id,
            "referral_code": referral_code,
        })

    async def _emit(self, name: str, data: dict) -> bool:
        try:
            sent = await send_event(name, data)
            if not sent:
                logger.warning(f"Notification {name} not sent: {data}")
            return sent
        except Exception as e:
            logger.error(f"Notification {name} failed: {e}", exc_info=True)
            return False


_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get singleton NotificationService instance."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
