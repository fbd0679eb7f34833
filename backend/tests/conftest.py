"""
Shared fixtures for the affiliate ledger tests.
"""

import os

# Must be set before app modules create the Inngest client
os.environ.setdefault("INNGEST_DEV", "true")
os.environ.setdefault("INNGEST_ENABLED", "false")

import pytest
from decimal import Decimal

from app.config import ProgramConfig
from app.services.affiliate_service import AffiliateService
from app.services.checkout_service import CheckoutService
from tests.fakes import FakeSupabase, FakeStripe, RecordingNotifications


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def config():
    return ProgramConfig(
        subscription_price=Decimal("5.00"),
        default_commission_rate=Decimal("50"),
        default_min_payout_threshold=Decimal("25.00"),
        stripe_price_id="price_test_monthly",
        frontend_url="https://threadposts.test",
    )


@pytest.fixture
def service(db, fake_stripe, notifications, config):
    return AffiliateService(
        supabase=db,
        stripe_client=fake_stripe,
        notifications=notifications,
        config=config,
    )


@pytest.fixture
def checkout_service(fake_stripe, service, config):
    return CheckoutService(stripe_client=fake_stripe, affiliate_service=service, config=config)


@pytest.fixture
def make_affiliate(db):
    """Insert an affiliate row directly."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        row = {
            "user_id": f"user-aff-{counter['n']}",
            "referral_code": f"CODE{counter['n']:04d}",
            "commission_rate": 50,
            "min_payout_threshold": 25,
            "pending_balance": 0,
            "total_earnings": 0,
            "stripe_connect_id": None,
            "stripe_connect_onboarded": False,
        }
        row.update(overrides)
        return db.seed("affiliates", **row)

    return _make


@pytest.fixture
def make_customer(db):
    """Insert a profile for a paying customer."""

    def _make(user_id: str, email: str, full_name: str = "Test Customer"):
        return db.seed("profiles", user_id=user_id, email=email, full_name=full_name)

    return _make
