"""
Inngest client shared by the event senders and the function registry.
"""

import os
import logging
import inngest

logger = logging.getLogger(__name__)

INNGEST_APP_ID = os.getenv("INNGEST_APP_ID", "threadposts")
INNGEST_DEV = os.getenv("INNGEST_DEV", "false").lower() == "true"

inngest_client = inngest.Inngest(
    app_id=INNGEST_APP_ID,
    is_production=not INNGEST_DEV,
    logger=logger,
)
