# querofretes_app/blueprints/billing.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import Blueprint, request, jsonify, current_app, redirect, session

from ..decorators import login_required, current_user
from ..services.errors import PaymentError
from ..services.gateways import Deadline, StripeGateway
from ..services.gateways.stripe_gateway import SUBSCRIPTION_DELETED, NAME
from ..services.plans import price_cents
from ..services.reconciliation import get_engine
from ..services.settings import get_billing_settings
from .payments import error_response, reconcile, plan_from_request

bp = Blueprint("billing", __name__, url_prefix="/billing")


def _gateway() -> StripeGateway:
    return StripeGateway(get_billing_settings())


@bp.route("/checkout", methods=["POST"])
@login_required
def checkout():
    """Cria a Stripe Checkout Session (modo assinatura) e registra a cobrança pendente."""
    data = request.get_json(silent=True) or request.form.to_dict()
    plan = plan_from_request(data, default="monthly")
    if not plan:
        return jsonify(error="Tipo de plano inválido"), 400

    user = current_user()
    settings = get_billing_settings()
    base = settings.public_base_url or request.host_url.rstrip("/")
    gw = _gateway()
    try:
        sess, ref = gw.create_checkout(
            user, plan,
            success_url=settings.stripe_success_url or f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=settings.stripe_cancel_url or f"{base}/subscribe",
        )
    except PaymentError as e:
        return error_response(e)

    get_engine().register_charge(
        gateway=NAME, charge_id=sess.id, user_id=user.id, plan_type=plan,
        amount_cents=price_cents(plan, settings), correlation_id=ref,
    )
    return jsonify(url=sess.url, session_id=sess.id)


@bp.route("/portal")
@login_required
def portal():
    """Redireciona para o Billing Portal da Stripe para gerenciar a assinatura."""
    user = current_user()
    base = get_billing_settings().public_base_url or request.host_url.rstrip("/")
    try:
        url = _gateway().portal_url(user, return_url=f"{base}/account")
    except PaymentError as e:
        return error_response(e)
    return redirect(url, code=303)


# -------- Stripe Webhook --------
@bp.route("/webhook", methods=["POST"])  # configure endpoint no Dashboard da Stripe
def stripe_webhook():
    gw = _gateway()
    deadline = Deadline(gw.settings.webhook_timeout, NAME)
    sig = request.headers.get("Stripe-Signature", "")
    try:
        event = gw.construct_event(request.data, sig)
    except PaymentError:
        current_app.logger.exception("Webhook signature error")
        return "bad signature", 400

    typ = event["type"]
    if typ == SUBSCRIPTION_DELETED:
        sub_id = event["data"]["object"].get("id")
        if sub_id:
            get_engine().cancel_provider_subscription(NAME, sub_id)
        return jsonify(received=True)

    try:
        normalized = gw.parse(event, deadline)
        return reconcile(normalized, deadline)
    except PaymentError as e:
        return error_response(e)


@bp.route("/sync/<session_id>", methods=["POST"])
@login_required
def sync_session(session_id: str):
    """Força a conciliação de uma Checkout Session (quando o webhook atrasou/falhou)."""
    user = current_user()
    try:
        event = _gateway().retrieve_session(session_id)
        if event.user_id not in (None, user.id) and not session["user"].get("is_admin"):
            return jsonify(error="Sessão pertence a outro usuário"), 403
        return reconcile(event)
    except PaymentError as e:
        return error_response(e)
