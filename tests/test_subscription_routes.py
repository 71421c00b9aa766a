# tests/test_subscription_routes.py
from querofretes_app.services.events import Lifecycle, NormalizedPaymentEvent
from querofretes_app.services.reconciliation import get_engine

from conftest import charge_id


def test_status_requires_login(client):
    assert client.get("/api/subscription/").status_code == 401


def test_status_without_subscription(logged_client_user):
    data = logged_client_user.get("/api/subscription/").get_json()
    assert data["entitlement"]["has_access"] is False
    assert data["subscription"] is None


def test_trial_once(logged_client_user):
    r = logged_client_user.post("/api/subscription/trial")
    assert r.status_code == 200
    assert r.get_json()["entitlement"]["subscription_type"] == "trial"
    assert r.get_json()["entitlement"]["has_access"] is True

    data = logged_client_user.get("/api/subscription/").get_json()
    assert data["subscription"]["plan_type"] == "trial"

    again = logged_client_user.post("/api/subscription/trial")
    assert again.status_code == 400


def test_trial_denied_after_paid_plan(logged_client_user, user_normal):
    get_engine().apply(NormalizedPaymentEvent(gateway="openpix", charge_id=charge_id(), lifecycle=Lifecycle.PAID,
                                              user_id=user_normal.id, plan_type="monthly"))
    assert logged_client_user.post("/api/subscription/trial").status_code == 400


def test_payment_history(logged_client_user, user_normal):
    eng = get_engine()
    for _ in range(3):
        eng.register_charge(gateway="openpix", charge_id=charge_id(), user_id=user_normal.id, plan_type="monthly",
                            amount_cents=9990)
    data = logged_client_user.get("/api/subscription/payments?limit=2").get_json()
    assert len(data["payments"]) == 2
    assert data["payments"][0]["amount"] == "99.90"
    assert data["payments"][0]["status"] == "pending"
