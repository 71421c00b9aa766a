# querofretes_app/blueprints/openpix.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import Blueprint, request, jsonify, current_app, session

from ..decorators import login_required, current_user
from ..models.payment import PaymentLedgerEntry
from ..services.errors import PaymentError
from ..services.gateways import OpenPixGateway
from ..services.gateways.openpix import NAME, is_test_ping
from ..services.plans import price_cents
from ..services.reconciliation import get_engine
from ..services.settings import get_billing_settings
from .payments import error_response, reconcile, plan_from_request, simulation_allowed

bp = Blueprint("openpix", __name__, url_prefix="/api/openpix")


def _gateway() -> OpenPixGateway:
    return OpenPixGateway(get_billing_settings())


@bp.route("/charges", methods=["POST"])
@login_required
def create_charge():
    data = request.get_json(silent=True) or request.form.to_dict()
    plan = plan_from_request(data, default="monthly")
    if not plan:
        return jsonify(error="Tipo de plano inválido"), 400

    user = current_user()
    gw = _gateway()
    try:
        charge = gw.create_charge(user, plan)
    except PaymentError as e:
        return error_response(e)

    charge_id = charge.get("identifier") or charge["correlationID"]
    get_engine().register_charge(
        gateway=NAME, charge_id=charge_id, user_id=user.id, plan_type=plan,
        amount_cents=price_cents(plan, gw.settings), correlation_id=charge["correlationID"],
    )
    return jsonify(
        id=charge_id,
        correlationID=charge["correlationID"],
        value=charge.get("value"),
        status=charge.get("status"),
        paymentUrl=charge.get("paymentLinkUrl"),
        qrCode=charge.get("qrCodeImage"),
        pixCode=charge.get("brCode"),
    )


@bp.route("/webhook", methods=["POST"])
def webhook():
    gw = _gateway()
    if not gw.authorize(request.headers.get("Authorization")):
        current_app.logger.warning("Webhook OpenPix com autorização inválida")
        return jsonify(error="unauthorized"), 401

    body = request.get_json(silent=True)
    if is_test_ping(body):
        return jsonify(received=True, test=True)
    try:
        event = gw.parse(body)
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)


@bp.route("/charges/<charge_id>")
@login_required
def charge_status(charge_id: str):
    """Status da cobrança no OpenPix; se mudou, concilia (força sincronização)."""
    user = current_user()
    entry = PaymentLedgerEntry.query.filter_by(gateway=NAME, gateway_charge_id=charge_id).first()
    if entry and entry.user_id != user.id and not session["user"].get("is_admin"):
        return jsonify(error="Cobrança pertence a outro usuário"), 403
    try:
        event = _gateway().sync_event(charge_id)
        if event is not None and event.user_id not in (None, user.id) and not session["user"].get("is_admin"):
            return jsonify(error="Cobrança pertence a outro usuário"), 403
        resp, status = reconcile(event)
    except PaymentError as e:
        return error_response(e)
    body = resp.get_json()
    body["charge_status"] = event.raw_status if event else None
    return jsonify(body), status


@bp.route("/simulate", methods=["POST"])
@login_required
def simulate():
    if not simulation_allowed():
        return jsonify(error="Simulação disponível apenas em ambiente de desenvolvimento"), 403
    data = request.get_json(silent=True) or request.form.to_dict()
    plan = plan_from_request(data, default="monthly")
    if not plan:
        return jsonify(error="Tipo de plano inválido"), 400
    gw = _gateway()
    try:
        event = gw.parse(gw.simulated_webhook(current_user(), plan), simulated=True)
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)
