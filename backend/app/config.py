"""
Affiliate Program Configuration

Single source of truth for pricing and commission parameters.
Built once from the environment and passed into the services that need it.
"""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return Decimal(default)
    try:
        return Decimal(raw.strip())
    except Exception:
        logger.warning(f"Invalid value for {name}={raw!r}, using default {default}")
        return Decimal(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Invalid value for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProgramConfig:
    """
    Pricing and commission parameters for the affiliate program.

    Attributes:
        subscription_price: Flat monthly subscription price (dollars)
        default_commission_rate: Percentage used when an affiliate has no rate
        default_min_payout_threshold: Dollars used when an affiliate has no threshold
        stripe_price_id: Stripe price for the subscription line item
        payout_currency: Currency for Connect transfers
        click_window_hours: One recorded click per IP/affiliate inside this window
        block_self_referrals: Refuse conversions where the buyer owns the affiliate
        frontend_url: Base URL used for checkout redirects
        connect_country: Country for new Connect Express accounts
    """
    subscription_price: Decimal = Decimal("5.00")
    default_commission_rate: Decimal = Decimal("50")
    default_min_payout_threshold: Decimal = Decimal("25.00")
    stripe_price_id: Optional[str] = None
    payout_currency: str = "usd"
    click_window_hours: int = 1
    block_self_referrals: bool = False
    frontend_url: str = "http://localhost:5173"
    connect_country: str = "US"

    @classmethod
    def from_env(cls) -> "ProgramConfig":
        return cls(
            subscription_price=_env_decimal("SUBSCRIPTION_PRICE", "5.00"),
            default_commission_rate=_env_decimal("DEFAULT_COMMISSION_RATE", "50"),
            default_min_payout_threshold=_env_decimal("DEFAULT_MIN_PAYOUT_THRESHOLD", "25.00"),
            stripe_price_id=os.getenv("STRIPE_PRICE_ID") or None,
            payout_currency=os.getenv("PAYOUT_CURRENCY", "usd").lower(),
            click_window_hours=_env_int("REFERRAL_CLICK_WINDOW_HOURS", 1),
            block_self_referrals=_env_bool("BLOCK_SELF_REFERRALS", False),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
            connect_country=os.getenv("STRIPE_CONNECT_COUNTRY", "US"),
        )


_program_config: Optional[ProgramConfig] = None


def get_program_config() -> ProgramConfig:
    """Get singleton ProgramConfig instance."""
    global _program_config
    if _program_config is None:
        _program_config = ProgramConfig.from_env()
    return _program_config
