# tests/test_reconciliation.py
import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import make_user, charge_id
from querofretes_app.models import PaymentLedgerEntry, SubscriptionRecord, SubscriptionEvent, User
from querofretes_app.services.events import Lifecycle, NormalizedPaymentEvent, Outcome

T = datetime(2025, 3, 1, 12, 0, 0)


def _event(user, cid, lifecycle=Lifecycle.PAID, **kw):
    data = dict(gateway="openpix", charge_id=cid, lifecycle=lifecycle,
                user_id=user.id if user else None, plan_type="monthly", amount_cents=9990)
    data.update(kw)
    return NormalizedPaymentEvent(**data)


def _reload(db_session, user):
    db_session.expire_all()
    return db_session.get(User, user.id)


def test_monthly_payment_activates_for_30_days(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    res = engine.apply(_event(u, cid), now=T)

    assert res.outcome == Outcome.ACTIVATED
    u = _reload(db_session, u)
    assert u.subscription_active is True
    assert u.payment_required is False
    assert u.subscription_type == "monthly"
    assert u.subscription_expires_at == T + timedelta(days=30)

    entry = db_session.get(PaymentLedgerEntry, res.ledger_entry_id)
    assert entry.processed and entry.subscription_activated
    assert entry.status == "completed"
    assert entry.paid_at == T
    assert entry.amount == Decimal("99.90")

    subs = SubscriptionRecord.query.filter_by(user_id=u.id).all()
    assert [s.status for s in subs] == ["active"]
    assert subs[0].current_period_end == T + timedelta(days=30)
    assert SubscriptionEvent.query.filter_by(user_id=u.id, event_type="payment_success").count() == 1


def test_annual_payment_uses_365_days(engine, db_session):
    u = make_user(db_session)
    engine.apply(_event(u, charge_id(), plan_type="annual", amount_cents=96000), now=T)
    u = _reload(db_session, u)
    assert u.subscription_type == "annual"
    assert u.subscription_expires_at == T + timedelta(days=365)


def test_duplicate_delivery_does_not_extend(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    first = engine.apply(_event(u, cid), now=T)
    second = engine.apply(_event(u, cid), now=T + timedelta(minutes=1))

    assert first.outcome == Outcome.ACTIVATED
    assert second.outcome == Outcome.DUPLICATE
    assert second.side_effects == []
    u = _reload(db_session, u)
    assert u.subscription_expires_at == T + timedelta(days=30)
    assert PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).count() == 1
    assert SubscriptionEvent.query.filter_by(user_id=u.id, event_type="payment_success").count() == 1


def test_refund_after_activation_clears_entitlement(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.apply(_event(u, cid), now=T)
    res = engine.apply(_event(u, cid, Lifecycle.REFUNDED), now=T + timedelta(days=5))

    assert res.outcome == Outcome.REFUNDED
    u = _reload(db_session, u)
    assert u.subscription_active is False
    assert u.subscription_type is None
    assert u.subscription_expires_at is None
    assert u.refunded_at == T + timedelta(days=5)
    entry = db_session.get(PaymentLedgerEntry, res.ledger_entry_id)
    assert entry.status == "refunded"
    assert entry.refunded_at == T + timedelta(days=5)
    assert SubscriptionRecord.query.filter_by(user_id=u.id, status="active").count() == 0
    assert [i.template for i in res.side_effects if i.channel == "email"] == ["subscription_cancelled"]


def test_refund_is_terminal(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.apply(_event(u, cid), now=T)
    engine.apply(_event(u, cid, Lifecycle.REFUNDED), now=T + timedelta(days=1))

    again = engine.apply(_event(u, cid, Lifecycle.REFUNDED), now=T + timedelta(days=2))
    late_paid = engine.apply(_event(u, cid), now=T + timedelta(days=3))

    assert again.outcome == Outcome.DUPLICATE
    assert late_paid.outcome in (Outcome.DUPLICATE, Outcome.IGNORED)
    u = _reload(db_session, u)
    assert u.subscription_active is False


def test_refund_before_paid_is_lenient_and_blocks_activation(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    refund = engine.apply(_event(u, cid, Lifecycle.REFUNDED), now=T)
    paid = engine.apply(_event(u, cid), now=T + timedelta(minutes=2))

    assert refund.outcome == Outcome.REFUNDED
    assert paid.outcome != Outcome.ACTIVATED
    u = _reload(db_session, u)
    assert u.subscription_active is False
    entry = PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).one()
    assert entry.status == "refunded"


def test_out_of_order_pending_after_paid_is_noop(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.apply(_event(u, cid), now=T)
    res = engine.apply(_event(u, cid, Lifecycle.PENDING), now=T + timedelta(minutes=1))

    assert res.outcome == Outcome.DUPLICATE
    entry = PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).one()
    assert entry.status == "completed"


def test_pending_then_paid(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    pending = engine.apply(_event(u, cid, Lifecycle.PENDING), now=T)
    assert pending.outcome == Outcome.PENDING_RECORDED
    u = _reload(db_session, u)
    assert u.subscription_active is False

    paid = engine.apply(_event(u, cid), now=T + timedelta(hours=1))
    assert paid.outcome == Outcome.ACTIVATED
    assert paid.ledger_entry_id == pending.ledger_entry_id


def test_rejected_and_expired_never_touch_processed_entry(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.apply(_event(u, cid), now=T)
    rej = engine.apply(_event(u, cid, Lifecycle.REJECTED), now=T + timedelta(minutes=1))
    exp = engine.apply(_event(u, cid, Lifecycle.EXPIRED), now=T + timedelta(minutes=2))

    assert rej.outcome == Outcome.IGNORED
    assert exp.outcome == Outcome.IGNORED
    entry = PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).one()
    assert entry.status == "completed"
    assert _reload(db_session, u).subscription_active is True


def test_rejected_marks_pending_entry(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.register_charge(gateway="openpix", charge_id=cid, user_id=u.id, plan_type="monthly",
                           amount_cents=9990, now=T)
    res = engine.apply(_event(u, cid, Lifecycle.REJECTED), now=T + timedelta(minutes=1))

    assert res.outcome == Outcome.REJECTED
    entry = PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).one()
    assert entry.status == "rejected"
    assert entry.processed is False
    assert _reload(db_session, u).subscription_active is False


def test_expired_charge_status(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    res = engine.apply(_event(u, cid, Lifecycle.EXPIRED), now=T)
    assert res.outcome == Outcome.EXPIRED
    assert PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).one().status == "expired"


def test_unknown_user_changes_no_entitlement(engine, db_session):
    res = engine.apply(_event(None, charge_id(), user_id=987654321), now=T)
    assert res.outcome == Outcome.USER_NOT_FOUND
    assert res.side_effects == []


def test_unknown_user_marks_existing_unprocessed_entry(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    ref = f"querofretes-{u.id}-1700000000000"
    entry = engine.register_charge(gateway="openpix", charge_id=cid, user_id=u.id, plan_type="monthly",
                                   correlation_id=ref, now=T)
    entry_id = entry.id
    # usuário removido entre a criação da cobrança e o webhook
    User.query.filter_by(id=u.id).delete(synchronize_session=False)
    db_session.commit()
    db_session.expire_all()

    res = engine.apply(_event(None, cid, user_id=None), now=T)
    assert res.outcome == Outcome.USER_NOT_FOUND
    assert res.ledger_entry_id == entry_id
    db_session.expire_all()
    entry = db_session.get(PaymentLedgerEntry, entry_id)
    assert entry.status == "user_not_found"
    assert entry.processed is False


def test_user_resolved_from_registered_entry(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    engine.register_charge(gateway="openpix", charge_id=cid, user_id=u.id, plan_type="annual", now=T)
    res = engine.apply(_event(None, cid, plan_type=None, amount_cents=None), now=T)

    assert res.outcome == Outcome.ACTIVATED
    assert res.user_id == u.id
    assert _reload(db_session, u).subscription_type == "annual"


def test_correlation_second_channel_is_duplicate(engine, db_session):
    u = make_user(db_session)
    ref = f"querofretes-{u.id}-1700000000001"
    first = engine.apply(_event(u, charge_id("in"), gateway="stripe", correlation_id=ref), now=T)
    second = engine.apply(_event(u, charge_id("pi"), gateway="stripe", correlation_id=ref),
                          now=T + timedelta(seconds=30))

    assert first.outcome == Outcome.ACTIVATED
    assert second.outcome == Outcome.DUPLICATE
    assert PaymentLedgerEntry.query.filter_by(correlation_id=ref).count() == 1


def test_correlation_adopts_notification_charge_id(engine, db_session):
    u = make_user(db_session)
    pref = charge_id("pref")
    token = f"querofretes-{u.id}-1700000000002"
    engine.register_charge(gateway="mercadopago", charge_id=pref, user_id=u.id, plan_type="monthly",
                           correlation_id=token, reference_id=None, now=T)
    pay = charge_id("pay")
    res = engine.apply(_event(u, pay, gateway="mercadopago", correlation_id=token), now=T)

    assert res.outcome == Outcome.ACTIVATED
    entry = db_session.get(PaymentLedgerEntry, res.ledger_entry_id)
    assert entry.gateway_charge_id == pay
    assert entry.reference_id == pref
    # reenvio com o id do pagamento é duplicado
    assert engine.apply(_event(u, pay, gateway="mercadopago", correlation_id=token), now=T).outcome == Outcome.DUPLICATE


def test_alternate_id_locates_entry_for_refund(engine, db_session):
    u = make_user(db_session)
    invoice = charge_id("in")
    engine.apply(_event(u, invoice, gateway="stripe"), now=T)
    res = engine.apply(_event(None, charge_id("pi"), Lifecycle.REFUNDED, gateway="stripe",
                              reference_ids=(invoice, charge_id("ch"))), now=T + timedelta(days=1))

    assert res.outcome == Outcome.REFUNDED
    assert res.user_id == u.id
    assert _reload(db_session, u).subscription_active is False


def test_new_payment_supersedes_active_record_without_stacking(engine, db_session):
    u = make_user(db_session)
    engine.apply(_event(u, charge_id()), now=T)
    engine.apply(_event(u, charge_id()), now=T + timedelta(days=10))

    u = _reload(db_session, u)
    assert u.subscription_expires_at == T + timedelta(days=40)
    statuses = sorted(s.status for s in SubscriptionRecord.query.filter_by(user_id=u.id))
    assert statuses == ["active", "expired"]


def test_plan_inferred_from_amount(engine, db_session):
    u = make_user(db_session)
    engine.apply(_event(u, charge_id(), plan_type=None, amount_cents=96000), now=T)
    assert _reload(db_session, u).subscription_type == "annual"


def test_confirmation_intents_sent_after_commit(engine, db_session, sent, monkeypatch):
    import dataclasses

    u = make_user(db_session, phone="5511999990000")
    monkeypatch.setattr(engine.dispatcher, "settings", dataclasses.replace(
        engine.dispatcher.settings, whatsapp_enabled=True, whatsapp_webhook_url="https://n8n.example/webhook"))
    res = engine.apply(_event(u, charge_id()), now=T)

    assert {i.channel for i in res.side_effects} == {"email", "whatsapp"}
    urls = [url for (_m, url, _k) in sent]
    assert any(url.endswith("/emails") for url in urls)
    assert "https://n8n.example/webhook" in urls


def test_side_effect_failure_does_not_undo_activation(engine, db_session, monkeypatch):
    import requests

    def _boom(*a, **k):
        raise requests.ConnectionError("sem rede")

    monkeypatch.setattr(requests, "post", _boom)
    u = make_user(db_session)
    res = engine.apply(_event(u, charge_id()), now=T)

    assert res.outcome == Outcome.ACTIVATED
    assert _reload(db_session, u).subscription_active is True


def test_persistence_error_rolls_back_and_propagates(engine, db_session, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from querofretes_app.services import reconciliation

    original = reconciliation.log_event
    state = {"fail": True}

    def _flaky(*a, **k):
        if state["fail"]:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return original(*a, **k)

    u = make_user(db_session)
    cid = charge_id()
    monkeypatch.setattr(reconciliation, "log_event", _flaky)
    with pytest.raises(OperationalError):
        engine.apply(_event(u, cid), now=T)

    state["fail"] = False
    u = _reload(db_session, u)
    assert u.subscription_active is False
    # reenvio do gateway processa normalmente
    assert engine.apply(_event(u, cid), now=T).outcome == Outcome.ACTIVATED


def test_preclaimed_entry_is_not_activated_again(engine, db_session):
    u = make_user(db_session)
    cid = charge_id()
    entry = engine.register_charge(gateway="openpix", charge_id=cid, user_id=u.id, plan_type="monthly", now=T)
    # outra requisição já reivindicou a cobrança
    PaymentLedgerEntry.query.filter_by(id=entry.id).update({"processed": True})
    db_session.commit()

    res = engine.apply(_event(u, cid), now=T)
    assert res.outcome == Outcome.DUPLICATE
    assert _reload(db_session, u).subscription_active is False


def test_concurrent_deliveries_activate_once(app, db_session):
    from querofretes_app.extensions import db
    from querofretes_app.services.reconciliation import get_engine

    u = make_user(db_session)
    uid = u.id
    cid = charge_id()
    barrier = threading.Barrier(2)
    outcomes = []
    errors = []

    def worker():
        with app.app_context():
            try:
                barrier.wait(timeout=10)
                res = get_engine().apply(_event(None, cid, user_id=uid), now=T)
                outcomes.append(res.outcome)
            except Exception as e:  # noqa: BLE001
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert not errors
    assert sorted(o.value for o in outcomes) == ["activated", "duplicate"]
    db_session.expire_all()
    assert PaymentLedgerEntry.query.filter_by(gateway="openpix", gateway_charge_id=cid).count() == 1
    assert SubscriptionEvent.query.filter_by(user_id=uid, event_type="payment_success").count() == 1
    assert db_session.get(User, uid).subscription_expires_at == T + timedelta(days=30)


def test_trial_only_once(engine, db_session):
    from querofretes_app.services.errors import TrialNotAllowed

    u = make_user(db_session)
    engine.start_trial(u, now=T)
    u = _reload(db_session, u)
    assert u.subscription_type == "trial"
    assert u.subscription_expires_at == T + timedelta(days=7)
    with pytest.raises(TrialNotAllowed):
        engine.start_trial(u, now=T + timedelta(days=1))


def test_cancel_provider_subscription_keeps_access_until_expiry(engine, db_session):
    u = make_user(db_session)
    engine.apply(_event(u, charge_id("in"), gateway="stripe", provider_subscription_id="sub_abc"), now=T)
    count = engine.cancel_provider_subscription("stripe", "sub_abc", now=T + timedelta(days=3))

    assert count == 1
    u = _reload(db_session, u)
    assert u.subscription_active is True
    assert u.stripe_subscription_id is None
    assert SubscriptionRecord.query.filter_by(user_id=u.id, provider_sub_id="sub_abc").one().status == "canceled"
