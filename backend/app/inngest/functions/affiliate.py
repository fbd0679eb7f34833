"""
Affiliate Program Background Jobs

Keeps Stripe Connect onboarding flags in step with Stripe in case an
account.updated webhook was missed.

Schedule:
- sync-connect-status: Every hour at :15
"""

import logging
from datetime import datetime, timezone
from inngest import TriggerCron
from app.inngest.client import inngest_client
from app.database import get_supabase_service
from app.services.affiliate_service import get_affiliate_service

logger = logging.getLogger(__name__)


# =============================================================================
# HOURLY: SYNC CONNECT STATUS
# =============================================================================

@inngest_client.create_function(
    fn_id="affiliate-sync-connect-status",
    trigger=TriggerCron(cron="15 * * * *"),  # Every hour at :15
)
async def sync_connect_status_fn(ctx, step):
    """
    Sync Stripe Connect onboarding status for affiliates with Connect accounts.

    Only accounts not yet marked onboarded are checked; onboarded accounts
    are kept current by the account.updated webhook.
    """
    logger.info("Starting hourly Connect status sync")

    affiliate_service = get_affiliate_service()

    async def find_connected_affiliates():
        supabase = get_supabase_service()
        response = supabase.table("affiliates").select(
            "id, referral_code"
        ).not_.is_(
            "stripe_connect_id", "null"
        ).eq(
            "stripe_connect_onboarded", False
        ).execute()
        return response.data or []

    affiliates = await step.run("find-connected-affiliates", find_connected_affiliates)

    if not affiliates:
        logger.info("No Connect accounts to sync")
        return {"status": "ok", "synced": 0}

    synced = 0
    onboarded = 0
    for affiliate in affiliates:
        async def sync_one(aid=affiliate["id"]):
            return await affiliate_service.sync_connect_status(aid)

        try:
            status = await step.run(f"sync-{affiliate['id'][:8]}", sync_one)
            synced += 1
            if status.get("onboarded"):
                onboarded += 1
        except Exception as e:
            logger.error(f"Error syncing Connect for {affiliate['referral_code']}: {e}")

    logger.info(f"Connect status sync complete: {synced}/{len(affiliates)} synced, {onboarded} newly onboarded")

    return {
        "status": "ok",
        "synced": synced,
        "onboarded": onboarded,
        "total": len(affiliates),
        "synced_at": datetime.now(timezone.utc).isoformat()
    }
