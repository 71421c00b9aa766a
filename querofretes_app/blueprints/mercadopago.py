# querofretes_app/blueprints/mercadopago.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import Blueprint, request, jsonify, current_app, session

from ..decorators import login_required, current_user
from ..services.errors import PaymentError
from ..services.gateways import Deadline, MercadoPagoGateway
from ..services.gateways.mercadopago import NAME
from ..services.plans import price_cents
from ..services.reconciliation import get_engine
from ..services.settings import get_billing_settings
from .payments import error_response, reconcile, plan_from_request, simulation_allowed

bp = Blueprint("mercadopago", __name__, url_prefix="/api/mercadopago")


def _gateway() -> MercadoPagoGateway:
    return MercadoPagoGateway(get_billing_settings())


@bp.route("/preference", methods=["POST"])
@login_required
def create_preference():
    data = request.get_json(silent=True) or request.form.to_dict()
    plan = plan_from_request(data, default="monthly")
    if not plan:
        return jsonify(error="Tipo de plano inválido"), 400

    user = current_user()
    gw = _gateway()
    try:
        gw.ensure_customer(user)
        preference, token = gw.create_preference(user, plan)
    except PaymentError as e:
        return error_response(e)

    entry = get_engine().register_charge(
        gateway=NAME, charge_id=preference["id"], user_id=user.id, plan_type=plan,
        amount_cents=price_cents(plan, gw.settings), correlation_id=token,
        reference_id=preference["id"],
    )
    return jsonify(
        preference_id=preference["id"],
        init_point=preference.get("init_point"),
        sandbox_init_point=preference.get("sandbox_init_point"),
        ledger_entry_id=entry.id if entry else None,
    )


@bp.route("/webhook", methods=["GET", "POST"])  # alguns avisos do MP chegam como GET
def webhook():
    gw = _gateway()
    deadline = Deadline(gw.settings.webhook_timeout, NAME)
    body = request.get_json(silent=True) or {}
    current_app.logger.info("Webhook Mercado Pago: args=%s body=%s", dict(request.args), body)
    try:
        event = gw.parse_notification(request.args, body, deadline)
        return reconcile(event, deadline)
    except PaymentError as e:
        return error_response(e)


@bp.route("/sync/<payment_id>", methods=["POST"])
@login_required
def sync_payment(payment_id: str):
    """Consulta o pagamento no MP e concilia como se fosse o webhook."""
    user = current_user()
    try:
        event = _gateway().get_payment(payment_id)
        if event is not None and event.user_id not in (None, user.id) and not session["user"].get("is_admin"):
            return jsonify(error="Pagamento pertence a outro usuário"), 403
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)


@bp.route("/simulate", methods=["POST"])
@login_required
def simulate():
    """Pagamento aprovado sintético; percorre o mesmo adaptador + motor (fora de produção)."""
    if not simulation_allowed():
        return jsonify(error="Simulação disponível apenas em ambiente de desenvolvimento"), 403
    data = request.get_json(silent=True) or request.form.to_dict()
    plan = plan_from_request(data, default="monthly")
    if not plan:
        return jsonify(error="Tipo de plano inválido"), 400
    gw = _gateway()
    try:
        event = gw.from_payment(gw.simulated_payment(current_user(), plan), simulated=True)
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)
