"""
API tests for the affiliate, billing and admin routers.

Auth dependencies are overridden; services run against the in-memory fakes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.deps import get_current_user, get_admin_user, AdminContext
from app.routers import affiliate, billing
from app.routers.admin import router as admin_router
from tests.fakes import StripeObj

USER = {"sub": "user-1", "email": "user1@example.com"}
ADMIN = AdminContext(admin_id="role-1", user_id="admin-1", email="admin@example.com")


@pytest.fixture
def client(service, checkout_service, monkeypatch):
    monkeypatch.setattr(affiliate, "get_affiliate_service", lambda: service)
    monkeypatch.setattr(billing, "get_checkout_service", lambda: checkout_service)
    monkeypatch.setattr("app.routers.admin.affiliates.get_affiliate_service", lambda: service)

    app = FastAPI()
    app.include_router(affiliate.router)
    app.include_router(billing.router)
    app.include_router(admin_router)
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_admin_user] = lambda: ADMIN
    return TestClient(app)


# =============================================================================
# Public endpoints
# =============================================================================

def test_track_valid_code(client, make_affiliate, db):
    aff = make_affiliate(referral_code="JANE2024")

    response = client.post(
        "/affiliate/track",
        json={"referral_code": "jane2024", "source": "https://threads.net/x"},
        headers={"x-forwarded-for": "9.9.9.9, 10.0.0.1", "user-agent": "pytest"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "affiliate_id": aff["id"]}
    click = db.rows("referral_clicks")[0]
    assert click["ip_address"] == "9.9.9.9"
    assert click["source"] == "https://threads.net/x"


def test_track_unknown_code(client, db):
    response = client.post("/affiliate/track", json={"referral_code": "NOPE"})

    assert response.status_code == 200
    assert response.json() == {"success": False, "affiliate_id": None}


def test_validate_token(client, make_affiliate):
    aff = make_affiliate()

    assert client.get(f"/affiliate/validate/{aff['id']}").json() == {"valid": True, "affiliate_id": aff["id"]}
    assert client.get("/affiliate/validate/unknown").json() == {"valid": False, "affiliate_id": None}


# =============================================================================
# Affiliate endpoints
# =============================================================================

def test_status_for_non_affiliate(client):
    response = client.get("/affiliate/status")

    assert response.status_code == 200
    assert response.json() == {"is_affiliate": False, "affiliate": None}


def test_join_then_join_again(client):
    first = client.post("/affiliate/join", json={"referral_code": "my-code"})
    second = client.post("/affiliate/join", json={})

    assert first.status_code == 200
    assert first.json()["affiliate"]["referral_code"] == "MY-CODE"
    assert second.status_code == 409
    assert second.json()["detail"]["error"] == "CONFLICT"


def test_join_with_invalid_code(client):
    response = client.post("/affiliate/join", json={"referral_code": "x!"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "VALIDATION_ERROR"


def test_update_referral_code_taken(client, make_affiliate):
    make_affiliate(referral_code="TAKEN")
    make_affiliate(user_id="user-1", referral_code="MINE")

    response = client.patch("/affiliate/referral-code", json={"referral_code": "taken"})

    assert response.status_code == 409


def test_dashboard_requires_affiliate(client):
    response = client.get("/affiliate/dashboard")
    assert response.status_code == 404


def test_dashboard(client, make_affiliate, db):
    aff = make_affiliate(user_id="user-1", referral_code="MINE", pending_balance=5, total_earnings=7.5)
    db.seed("affiliate_earnings", affiliate_id=aff["id"], amount=2.5, stripe_payment_id="cs_1")
    db.seed("referral_clicks", affiliate_id=aff["id"], ip_address="1.1.1.1", source="direct", user_agent="UA")
    db.seed("referral_clicks", affiliate_id=aff["id"], ip_address="2.2.2.2", source="direct", user_agent="UA")
    db.seed("referral_conversions", affiliate_id=aff["id"], referred_user_id="buyer-1")

    response = client.get("/affiliate/dashboard")

    assert response.status_code == 200
    data = response.json()
    assert data["affiliate"]["referral_url"] == "https://threadposts.test/?ref=MINE"
    assert data["stats"]["pending_balance"] == 5.0
    assert data["stats"]["total_earnings"] == 7.5
    assert data["stats"]["total_clicks"] == 2
    assert data["stats"]["total_conversions"] == 1
    assert data["stats"]["conversion_rate"] == 50.0
    assert len(data["recent_earnings"]) == 1


def test_payout_below_threshold_message(client, make_affiliate):
    make_affiliate(
        user_id="user-1",
        pending_balance=10,
        stripe_connect_id="acct_1",
        stripe_connect_onboarded=True,
    )

    response = client.post("/affiliate/payout")

    assert response.status_code == 400
    assert response.json()["detail"]["message"] == (
        "Minimum payout threshold is $25.00. Current balance: $10.00"
    )


def test_payout_success(client, make_affiliate, db):
    aff = make_affiliate(
        user_id="user-1",
        pending_balance=27.5,
        total_earnings=27.5,
        stripe_connect_id="acct_1",
        stripe_connect_onboarded=True,
    )

    response = client.post("/affiliate/payout")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["amount"] == 27.5
    assert body["transfer_id"].startswith("tr_")
    assert db.get("affiliates", aff["id"])["pending_balance"] == 0


def test_payout_stripe_failure_is_502(client, make_affiliate, fake_stripe):
    make_affiliate(
        user_id="user-1",
        pending_balance=30,
        stripe_connect_id="acct_1",
        stripe_connect_onboarded=True,
    )
    fake_stripe.failures["Transfer.create"] = Exception("account closed")

    response = client.post("/affiliate/payout")

    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "EXTERNAL_SERVICE_ERROR"


def test_create_payout_request(client, make_affiliate):
    make_affiliate(user_id="user-1", pending_balance=30)

    response = client.post("/affiliate/payout-requests")

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["amount"] == 30.0


def test_connect_onboarding_and_status(client, make_affiliate, fake_stripe):
    make_affiliate(user_id="user-1")

    onboarding = client.post(
        "/affiliate/connect/onboarding",
        json={"return_url": "https://app/ok", "refresh_url": "https://app/retry"},
    )
    status = client.get("/affiliate/connect/status")

    assert onboarding.status_code == 200
    assert onboarding.json()["url"].startswith("https://connect.stripe.test/")
    assert fake_stripe.called("Account.create")[0]["email"] == "user1@example.com"
    assert status.json()["onboarded"] is False


# =============================================================================
# Billing
# =============================================================================

def test_checkout_carries_validated_affiliate(client, make_affiliate, fake_stripe, db):
    aff = make_affiliate()

    response = client.post("/billing/checkout", json={"affiliate_id": aff["id"]})

    assert response.status_code == 200
    params = fake_stripe.called("checkout.Session.create")[0]
    assert params["metadata"] == {"user_id": "user-1", "affiliate_id": aff["id"]}
    assert params["subscription_data"]["metadata"]["affiliate_id"] == aff["id"]
    assert params["line_items"] == [{"price": "price_test_monthly", "quantity": 1}]
    assert params["customer_email"] == "user1@example.com"
    # Nothing is credited until the session is paid
    assert db.rows("affiliate_earnings") == []
    assert db.rows("referral_conversions") == []


def test_checkout_drops_invalid_affiliate_token(client, fake_stripe):
    response = client.post("/billing/checkout", json={"affiliate_id": "stale-token"})

    assert response.status_code == 200
    assert fake_stripe.called("checkout.Session.create")[0]["metadata"] == {"user_id": "user-1"}


def test_checkout_reuses_existing_customer(client, fake_stripe):
    fake_stripe.customers["cus_1"] = StripeObj(id="cus_1", email="user1@example.com")

    client.post("/billing/checkout", json={})

    params = fake_stripe.called("checkout.Session.create")[0]
    assert params["customer"] == "cus_1"
    assert "customer_email" not in params


def test_confirm_paid_checkout(client, make_affiliate, fake_stripe, db):
    aff = make_affiliate()
    fake_stripe.sessions["cs_ok"] = StripeObj(
        id="cs_ok",
        mode="subscription",
        payment_status="paid",
        metadata={"user_id": "user-1", "affiliate_id": aff["id"]},
    )

    first = client.post("/billing/checkout/confirm", json={"session_id": "cs_ok"})
    second = client.post("/billing/checkout/confirm", json={"session_id": "cs_ok"})

    assert first.json()["commission_applied"] is True
    assert first.json()["conversion_created"] is True
    assert second.json()["commission_applied"] is False
    assert db.get("affiliates", aff["id"])["pending_balance"] == 2.5


def test_confirm_other_users_checkout_is_forbidden(client, fake_stripe):
    fake_stripe.sessions["cs_other"] = StripeObj(
        id="cs_other", mode="subscription", payment_status="paid", metadata={"user_id": "someone-else"}
    )

    response = client.post("/billing/checkout/confirm", json={"session_id": "cs_other"})

    assert response.status_code == 403


# =============================================================================
# Admin
# =============================================================================

def test_admin_list_affiliates(client, make_affiliate):
    make_affiliate()
    make_affiliate()

    response = client.get("/admin/affiliates?page=1&page_size=1")

    assert response.status_code == 200
    assert response.json()["total"] == 2
    assert len(response.json()["affiliates"]) == 1


def test_admin_payout_decision(client, make_affiliate, db):
    aff = make_affiliate()
    payout = db.seed("affiliate_payouts", affiliate_id=aff["id"], amount=30.0, status="pending")

    listed = client.get("/admin/affiliates/payouts?status=pending")
    paid = client.post(f"/admin/affiliates/payouts/{payout['id']}/status", json={"status": "paid"})
    again = client.post(f"/admin/affiliates/payouts/{payout['id']}/status", json={"status": "denied"})

    assert listed.json()["total"] == 1
    assert paid.status_code == 200
    assert paid.json()["payout"]["status"] == "paid"
    assert again.status_code == 409


def test_admin_payout_status_must_be_paid_or_denied(client):
    response = client.post("/admin/affiliates/payouts/any/status", json={"status": "completed"})
    assert response.status_code == 422


def test_admin_refund(client, make_affiliate, make_customer, service, db):
    aff = make_affiliate(pending_balance=2.5, total_earnings=2.5)
    make_customer("buyer-1", "buyer@example.com")
    db.seed("referral_conversions", affiliate_id=aff["id"], referred_user_id="buyer-1")

    response = client.post(
        "/admin/affiliates/refunds",
        json={"payment_intent_id": "pi_1", "customer_email": "buyer@example.com"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["commission_reversed"] is True
    assert body["deduction"] == 2.5
    assert db.get("affiliates", aff["id"])["pending_balance"] == 0
