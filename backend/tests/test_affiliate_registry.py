"""
Unit tests for the affiliate registry.

Tests enrollment, referral code rules and the atomic balance update.
"""

import pytest
from decimal import Decimal

from app.services.affiliate_service import validate_referral_code
from app.utils.errors import (
    AlreadyExistsError,
    InvalidReferralCodeError,
    NotFoundError,
    ReferralCodeTakenError,
)


@pytest.mark.asyncio
async def test_create_affiliate_with_generated_code(service, db, notifications):
    """New affiliates get an 8 character upper-case code and program defaults."""
    affiliate = await service.create_affiliate("user-1")

    code = affiliate["referral_code"]
    assert len(code) == 8
    assert code == code.upper()
    assert affiliate["commission_rate"] == 50.0
    assert affiliate["min_payout_threshold"] == 25.0
    assert affiliate["pending_balance"] == 0
    assert affiliate["total_earnings"] == 0
    assert len(db.rows("affiliates", user_id="user-1")) == 1
    assert notifications.of("affiliate_welcome") == [(affiliate["id"], code)]


@pytest.mark.asyncio
async def test_create_affiliate_with_chosen_code_is_normalized(service):
    """Chosen codes are stored upper-cased."""
    affiliate = await service.create_affiliate("user-1", referral_code="jane_2024")
    assert affiliate["referral_code"] == "JANE_2024"


@pytest.mark.asyncio
async def test_create_affiliate_twice_fails(service, db):
    """A user can only be enrolled once."""
    await service.create_affiliate("user-1")

    with pytest.raises(AlreadyExistsError):
        await service.create_affiliate("user-1")

    assert len(db.rows("affiliates", user_id="user-1")) == 1


@pytest.mark.asyncio
async def test_create_affiliate_with_taken_code_fails(service, make_affiliate):
    """A chosen code owned by someone else is rejected."""
    make_affiliate(referral_code="JANE2024")

    with pytest.raises(ReferralCodeTakenError):
        await service.create_affiliate("user-2", referral_code="jane2024")


@pytest.mark.asyncio
async def test_create_affiliate_retries_generated_code_collision(service, db, monkeypatch):
    """A generated code that collides at insert time is replaced."""
    db.seed("affiliates", user_id="other", referral_code="AAAAAAAA")
    codes = iter(["AAAAAAAA", "BBBBBBBB"])

    async def fake_generate():
        return next(codes)

    monkeypatch.setattr(service, "_generate_referral_code", fake_generate)

    affiliate = await service.create_affiliate("user-1")
    assert affiliate["referral_code"] == "BBBBBBBB"


@pytest.mark.parametrize("code", ["abc", "x" * 21, "has space", "bad!chars", ""])
def test_invalid_referral_codes_rejected(code):
    """Codes must be 4-20 chars of letters, digits, underscore or hyphen."""
    with pytest.raises(InvalidReferralCodeError):
        validate_referral_code(code)


def test_valid_referral_code_boundaries():
    """4 and 20 characters are both accepted."""
    assert validate_referral_code("ab-1") == "AB-1"
    assert validate_referral_code("a" * 20) == "A" * 20


@pytest.mark.asyncio
async def test_update_referral_code(service, make_affiliate, db):
    """Updating stores the normalized code."""
    affiliate = make_affiliate(referral_code="OLDCODE")

    updated = await service.update_referral_code(affiliate["id"], "new-code")

    assert updated["referral_code"] == "NEW-CODE"
    assert db.get("affiliates", affiliate["id"])["referral_code"] == "NEW-CODE"


@pytest.mark.asyncio
async def test_update_referral_code_to_own_code_is_allowed(service, make_affiliate):
    """Re-saving your own code does not count as taken."""
    affiliate = make_affiliate(referral_code="MINE")
    updated = await service.update_referral_code(affiliate["id"], "mine")
    assert updated["referral_code"] == "MINE"


@pytest.mark.asyncio
async def test_update_referral_code_taken_by_other(service, make_affiliate):
    """Another affiliate's code (in any case) is rejected."""
    make_affiliate(referral_code="TAKEN")
    affiliate = make_affiliate(referral_code="MINE")

    with pytest.raises(ReferralCodeTakenError):
        await service.update_referral_code(affiliate["id"], "taken")


@pytest.mark.asyncio
async def test_update_referral_code_invalid(service, make_affiliate):
    affiliate = make_affiliate()
    with pytest.raises(InvalidReferralCodeError):
        await service.update_referral_code(affiliate["id"], "no")


@pytest.mark.asyncio
async def test_update_referral_code_unknown_affiliate(service):
    with pytest.raises(NotFoundError):
        await service.update_referral_code("missing-id", "GOODCODE")


@pytest.mark.asyncio
async def test_apply_balance_delta_floors_at_zero(service, make_affiliate):
    """Negative deltas never push balances below zero."""
    affiliate = make_affiliate(pending_balance=2.5, total_earnings=2.5)

    updated = await service.apply_balance_delta(affiliate["id"], Decimal("-10.00"), Decimal("-1.00"))

    assert updated["pending_balance"] == 0
    assert updated["total_earnings"] == 1.5


@pytest.mark.asyncio
async def test_apply_balance_delta_unknown_affiliate(service):
    with pytest.raises(NotFoundError):
        await service.apply_balance_delta("missing-id", Decimal("1"), Decimal("1"))


def test_commission_rate_and_threshold_fall_back_to_defaults(service):
    """Null rate or threshold uses the program defaults."""
    affiliate = {"id": "a", "commission_rate": None, "min_payout_threshold": None}
    assert service.commission_rate_for(affiliate) == Decimal("50")
    assert service.payout_threshold_for(affiliate) == Decimal("25.00")
    assert service.compute_commission(affiliate) == Decimal("2.50")


def test_compute_commission_uses_affiliate_rate(service):
    assert service.compute_commission({"id": "a", "commission_rate": 30}) == Decimal("1.50")
