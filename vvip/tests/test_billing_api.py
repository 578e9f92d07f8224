"""
Billing API contract tests.

Authenticates with X-User-Id (allowed outside production). Stripe and email
are replaced by in-memory fakes.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from vvip.features.billing import store
from vvip.main import app
from vvip.tests.mocks import invoice_event, seed_subscription

pytestmark = pytest.mark.usefixtures("reset_db")

client = TestClient(app)


def _headers(account_id):
    return {"X-User-Id": account_id}


def test_requires_authentication():
    resp = client.get("/api/billing/status")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_status_creates_free_record_for_new_account():
    resp = client.get("/api/billing/status", headers=_headers("acct_api_new"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "Free"
    assert body["commitment_until"] is None
    assert body["billing_enabled"] is False
    assert store.get_record("acct_api_new") is not None


def test_create_subscription_returns_client_secret(fake_provider, fake_notifier):
    resp = client.post(
        "/api/billing/subscriptions",
        headers=_headers("acct_api_create"),
        json={"plan_id": "Gold", "payment_method_id": "pm_card"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_id"] == "Gold"
    assert body["price_id"] == "price_gold"
    assert body["client_secret"]
    assert store.get_record("acct_api_create").plan == "Free"


def test_create_subscription_unavailable_without_stripe():
    resp = client.post(
        "/api/billing/subscriptions",
        headers=_headers("acct_api_off"),
        json={"plan_id": "Gold", "payment_method_id": "pm_card"},
    )
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_unavailable"


def test_create_subscription_invalid_plan(fake_provider):
    resp = client.post(
        "/api/billing/subscriptions",
        headers=_headers("acct_api_bad"),
        json={"plan_id": "Diamond", "payment_method_id": "pm_card"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_plan"


def test_card_decline_returns_402_with_stripe_message(fake_provider):
    fake_provider.decline_message = "Your card has insufficient funds."

    resp = client.post(
        "/api/billing/subscriptions",
        headers=_headers("acct_api_decline"),
        json={"plan_id": "Gold", "payment_method_id": "pm_card"},
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["error"]["code"] == "payment_rejected"
    assert body["error"]["message"] == "Your card has insufficient funds."


def test_confirm_payment_commits_plan(fake_provider, fake_notifier):
    seed_subscription("acct_api_confirm", customer_id="cus_api_confirm")
    fake_provider.add_subscription("sub_api", customer_id="cus_api_confirm", metadata={"plan_id": "VVIP"})

    resp = client.post(
        "/api/billing/subscriptions/confirm",
        headers=_headers("acct_api_confirm"),
        json={"subscription_id": "sub_api"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "VVIP"
    assert body["is_within_commitment"] is True
    assert body["commitment_until"]


def test_confirm_unpaid_subscription_returns_409(fake_provider):
    seed_subscription("acct_api_unpaid", customer_id="cus_api_unpaid")
    fake_provider.add_subscription("sub_unpaid", customer_id="cus_api_unpaid", status="incomplete")

    resp = client.post(
        "/api/billing/subscriptions/confirm",
        headers=_headers("acct_api_unpaid"),
        json={"subscription_id": "sub_unpaid"},
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "payment_not_confirmed"


def test_cancel_inside_commitment_returns_403_with_details(fake_provider):
    until = datetime.now(timezone.utc) + timedelta(days=10)
    seed_subscription("acct_api_a", "Gold", "sub_api_a", commitment_until=until)

    resp = client.post("/api/billing/subscriptions/cancel", headers=_headers("acct_api_a"))

    assert resp.status_code == 403
    body = resp.json()
    assert body["error"]["code"] == "commitment_active"
    assert body["remaining_days"] == 10
    assert body["commitment_until"] == until.isoformat()
    assert body["error"]["remaining_days"] == 10
    assert store.get_record("acct_api_a").plan == "Gold"


def test_cancel_after_commitment(fake_provider, fake_notifier):
    seed_subscription(
        "acct_api_done", "Gold", "sub_api_done", commitment_until=datetime.now(timezone.utc) - timedelta(days=1)
    )

    resp = client.post("/api/billing/subscriptions/cancel", headers=_headers("acct_api_done"))

    assert resp.status_code == 200
    assert store.get_record("acct_api_done").plan == "Free"


def test_cancel_without_plan_returns_400():
    resp = client.post("/api/billing/subscriptions/cancel", headers=_headers("acct_api_free"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_active_subscription"


def test_change_upgrade_and_downgrade(fake_provider):
    seed_subscription("acct_api_change", "Platinum", "sub_api_change")
    fake_provider.add_subscription("sub_api_change", price_id="price_platinum")

    down = client.post(
        "/api/billing/subscriptions/change", headers=_headers("acct_api_change"), json={"plan_id": "Gold"}
    )
    assert down.status_code == 200
    assert down.json()["type"] == "downgrade"

    up = client.post(
        "/api/billing/subscriptions/change", headers=_headers("acct_api_change"), json={"plan_id": "VVIP"}
    )
    assert up.status_code == 200
    assert up.json()["type"] == "upgrade"

    status = client.get("/api/billing/status", headers=_headers("acct_api_change")).json()
    assert status["plan"] == "VVIP"
    assert status["pending_downgrade"] is None


def test_change_to_same_plan_returns_400(fake_provider):
    seed_subscription("acct_api_same", "Gold", "sub_api_same")
    resp = client.post(
        "/api/billing/subscriptions/change", headers=_headers("acct_api_same"), json={"plan_id": "Gold"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "same_plan"


def test_payment_history(fake_provider, fake_notifier):
    seed_subscription("acct_api_hist", "Gold", "sub_api_hist", commitment_until=datetime.now(timezone.utc))
    client.post("/api/billing/webhook", content=invoice_event("evt_hist", "sub_api_hist", invoice_id="in_hist"))

    resp = client.get("/api/billing/payments", headers=_headers("acct_api_hist"))

    assert resp.status_code == 200
    entries = resp.json()
    assert len(entries) == 1
    assert entries[0]["kind"] == "renewal"
    assert entries[0]["stripe_reference"] == "in_hist"


def test_plans_catalog():
    resp = client.get("/api/billing/plans")

    assert resp.status_code == 200
    plans = resp.json()
    assert [p["plan_id"] for p in plans] == ["Gold", "Platinum", "VVIP"]
    assert [p["tier"] for p in plans] == [1, 2, 3]
    assert all(p["available"] for p in plans)


def test_billing_config_from_server_env(monkeypatch):
    resp = client.get("/api/billing/config")
    assert resp.json() == {"enabled": False, "publishable_key": None, "mode": None}

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_abc")
    monkeypatch.setenv("STRIPE_PUBLISHABLE_KEY", "pk_test_abc")
    resp = client.get("/api/billing/config")
    assert resp.json() == {"enabled": True, "publishable_key": "pk_test_abc", "mode": "test"}


def test_webhook_rejects_bad_signature(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_api")

    resp = client.post(
        "/api/billing/webhook",
        content=invoice_event("evt_bad", "sub_bad"),
        headers={"Stripe-Signature": "t=1,v1=deadbeef"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_webhook_acknowledges_unmatched_event():
    resp = client.post("/api/billing/webhook", content=invoice_event("evt_nomatch_api", "sub_nobody"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert body["outcome"] == "no_match"


def test_webhook_apply_failure_returns_5xx(fake_provider, fake_notifier):
    seed_subscription("acct_api_5xx", "VVIP", "sub_api_5xx", pending_downgrade="Gold")
    failing_client = TestClient(app, raise_server_exceptions=False)

    resp = failing_client.post("/api/billing/webhook", content=invoice_event("evt_5xx", "sub_api_5xx"))

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "processor_error"
