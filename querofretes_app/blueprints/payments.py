# querofretes_app/blueprints/payments.py
# -*- coding: utf-8 -*-
"""Peças comuns das rotas de pagamento (webhooks, sincronização, simulação)."""
from __future__ import annotations

from flask import current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from ..services.errors import PaymentError
from ..services.events import Outcome
from ..services.plans import PAID_PLANS, normalize_plan_type
from ..services.reconciliation import get_engine
from ..services.settings import get_billing_settings


def error_response(e: PaymentError):
    if e.status_code >= 500:
        current_app.logger.error("Erro de pagamento (%s): %s", e.gateway, e.message)
    else:
        current_app.logger.warning("Requisição de pagamento recusada (%s): %s", e.gateway, e.message)
    return jsonify(error=e.message), e.status_code


def reconcile(event, deadline=None):
    """Entrega o evento ao motor e traduz o resultado numa resposta HTTP."""
    if event is None:
        return jsonify(received=True, outcome=Outcome.IGNORED.value), 200
    if deadline is not None:
        deadline.check()
    try:
        result = get_engine().apply(event)
    except SQLAlchemyError:
        # o motor já desfez a transação; o gateway reenvia
        return jsonify(error="Falha ao registrar pagamento"), 500
    if result.outcome == Outcome.USER_NOT_FOUND:
        current_app.logger.warning("Pagamento %s/%s sem usuário correspondente", event.gateway, event.charge_id)
    return jsonify(received=True, **result.to_dict()), 200


def simulation_allowed() -> bool:
    return bool(get_billing_settings().simulation_enabled)


def plan_from_request(data: dict, default: str | None = None) -> str | None:
    plan = normalize_plan_type(data.get("planType") or data.get("plan_type") or data.get("plan"), default)
    return plan if plan in PAID_PLANS else None
