# querofretes_app/blueprints/subscription.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import Blueprint, jsonify, request

from ..decorators import login_required, current_user
from ..models.payment import PaymentLedgerEntry
from ..models.subscription import SubscriptionRecord
from ..services.errors import PaymentError
from ..services.reconciliation import get_engine
from .payments import error_response

bp = Blueprint("subscription", __name__, url_prefix="/api/subscription")


@bp.route("/")
@login_required
def status():
    u = current_user()
    current = (SubscriptionRecord.query
               .filter_by(user_id=u.id, status="active")
               .order_by(SubscriptionRecord.created_at.desc())
               .first())
    return jsonify(
        entitlement=u.entitlement_dict(),
        subscription=current.to_dict() if current else None,
    )


@bp.route("/trial", methods=["POST"])
@login_required
def start_trial():
    u = current_user()
    try:
        get_engine().start_trial(u)
    except PaymentError as e:
        return error_response(e)
    return jsonify(message="Período de teste ativado.", entitlement=u.entitlement_dict())


@bp.route("/payments")
@login_required
def payments():
    u = current_user()
    limit = min(request.args.get("limit", 50, type=int), 200)
    entries = (PaymentLedgerEntry.query
               .filter_by(user_id=u.id)
               .order_by(PaymentLedgerEntry.created_at.desc(), PaymentLedgerEntry.id.desc())
               .limit(limit).all())
    return jsonify(payments=[e.to_dict() for e in entries])
