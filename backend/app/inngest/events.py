"""
Inngest event names and the fire-and-forget sender.

send_event() never raises: side effects must not fail the ledger
operation that triggered them.
"""

import os
import logging
from typing import Any, Dict

import inngest

from app.inngest.client import inngest_client

logger = logging.getLogger(__name__)

INNGEST_ENABLED = os.getenv("INNGEST_ENABLED", "true").lower() == "true"


class Events:
    """Event names emitted by the affiliate ledger."""
    AFFILIATE_THRESHOLD_REACHED = "threadposts/affiliate.threshold_reached"
    AFFILIATE_PAYOUT_RESULT = "threadposts/affiliate.payout_result"
    AFFILIATE_WELCOME = "threadposts/affiliate.welcome"
    REFUND_PROCESSED = "threadposts/refund.processed"


async def send_event(name: str, data: Dict[str, Any]) -> bool:
    """
    Send an event to Inngest.

    Returns:
        True if the event was accepted, False if Inngest is disabled or the send failed
    """
    if not INNGEST_ENABLED:
        logger.info(f"Inngest disabled, dropping event {name}: {data}")
        return False

    try:
        await inngest_client.send(inngest.Event(name=name, data=data))
        logger.debug(f"Sent Inngest event {name}")
        return True
    except Exception as e:
        logger.error(f"Failed to send Inngest event {name}: {e}", exc_info=True)
        return False
