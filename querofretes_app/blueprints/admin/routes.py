# querofretes_app/blueprints/admin/routes.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import jsonify, request, current_app

from ..admin import admin_bp
from ...decorators import admin_required
from ...extensions import db
from ...models import User, PaymentLedgerEntry, SubscriptionRecord, SubscriptionEvent
from ...services.errors import PaymentError
from ...services.gateways import MercadoPagoGateway, OpenPixGateway, StripeGateway
from ...services.settings import get_billing_settings
from ...services.sweeper import sweep_expired_entitlements
from ..payments import error_response, reconcile


def _gateways() -> dict:
    settings = get_billing_settings()
    return {
        "stripe": StripeGateway(settings),
        "mercadopago": MercadoPagoGateway(settings),
        "openpix": OpenPixGateway(settings),
    }


def _first(iterable):
    for x in iterable or []:
        if x:
            return x
    return None


@admin_bp.route("/ledger")
@admin_required
def ledger():
    q = PaymentLedgerEntry.query
    for field in ("gateway", "status", "plan_type"):
        value = request.args.get(field)
        if value:
            q = q.filter(getattr(PaymentLedgerEntry, field) == value)
    user_id = request.args.get("user_id", type=int)
    if user_id:
        q = q.filter(PaymentLedgerEntry.user_id == user_id)
    processed = request.args.get("processed")
    if processed in ("0", "1"):
        q = q.filter(PaymentLedgerEntry.processed.is_(processed == "1"))
    limit = min(request.args.get("limit", 100, type=int), 500)
    entries = q.order_by(PaymentLedgerEntry.id.desc()).limit(limit).all()
    return jsonify(entries=[e.to_dict() for e in entries], count=len(entries))


@admin_bp.route("/ledger/<int:entry_id>/sync", methods=["POST"])
@admin_required
def ledger_sync(entry_id: int):
    """Consulta o gateway da entrada e concilia (mesmo caminho do webhook)."""
    entry = db.session.get(PaymentLedgerEntry, entry_id)
    if entry is None:
        return jsonify(error="Entrada não encontrada"), 404
    gw = _gateways().get(entry.gateway)
    if gw is None:
        return jsonify(error=f"Gateway desconhecido: {entry.gateway}"), 400
    try:
        if entry.gateway == "stripe":
            session_id = _first(x for x in (entry.gateway_charge_id, entry.reference_id)
                                if x and x.startswith("cs_"))
            if not session_id:
                return jsonify(error="Entrada Stripe sem Checkout Session para consultar"), 400
            event = gw.retrieve_session(session_id)
        elif entry.gateway == "mercadopago":
            event = gw.get_payment(entry.gateway_charge_id)
        else:
            event = gw.sync_event(entry.gateway_charge_id)
        current_app.logger.info("Sincronização manual da entrada %s (%s)", entry_id, entry.gateway)
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)


@admin_bp.route("/sweep", methods=["POST"])
@admin_required
def sweep():
    report = sweep_expired_entitlements()
    return jsonify(report.to_dict())


@admin_bp.route("/users/<int:user_id>/entitlement")
@admin_required
def user_entitlement(user_id: int):
    u = db.session.get(User, user_id)
    if u is None:
        return jsonify(error="Usuário não encontrado"), 404
    subs = (SubscriptionRecord.query.filter_by(user_id=u.id)
            .order_by(SubscriptionRecord.id.desc()).limit(20).all())
    events = (SubscriptionEvent.query.filter_by(user_id=u.id)
              .order_by(SubscriptionEvent.id.desc()).limit(50).all())
    return jsonify(
        user={"id": u.id, "name": u.name, "email": u.email, "profile_type": u.profile_type},
        entitlement=u.entitlement_dict(),
        subscriptions=[s.to_dict() for s in subs],
        events=[
            {"event_type": ev.event_type, "plan_type": ev.plan_type, "gateway": ev.gateway,
             "details": ev.details, "created_at": ev.created_at.isoformat() if ev.created_at else None}
            for ev in events
        ],
    )


@admin_bp.route("/gateways/<name>/charges")
@admin_required
def gateway_charges(name: str):
    gw = _gateways().get(name)
    if gw is None:
        return jsonify(error=f"Gateway desconhecido: {name}"), 404
    limit = min(request.args.get("limit", 20, type=int), 100)
    try:
        if name == "mercadopago":
            items = gw.search_payments(limit)
        else:
            items = gw.list_charges(limit)
    except PaymentError as e:
        return error_response(e)
    for item in items:
        if item.get("created_at") is not None:
            item["created_at"] = item["created_at"].isoformat()
    return jsonify(gateway=name, charges=items)
