# querofretes_app/models/payment.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import json
from datetime import datetime
from ..extensions import db

LEDGER_PENDING = "pending"
LEDGER_COMPLETED = "completed"
LEDGER_REFUNDED = "refunded"
LEDGER_EXPIRED = "expired"
LEDGER_REJECTED = "rejected"
LEDGER_USER_NOT_FOUND = "user_not_found"


class PaymentLedgerEntry(db.Model):
    """Uma tentativa de cobrança em um gateway. Nunca é apagada (trilha de auditoria)."""
    __tablename__ = "payment_ledger"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    gateway = db.Column(db.String(20), nullable=False)                 # stripe, mercadopago, openpix
    gateway_charge_id = db.Column(db.String(120), nullable=False)
    reference_id = db.Column(db.String(120))                           # id da criação (ex.: preference_id)
    correlation_id = db.Column(db.String(512), index=True)
    status = db.Column(db.String(20), nullable=False, default=LEDGER_PENDING, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)  # R$ (unidade maior)
    plan_type = db.Column(db.String(20))
    processed = db.Column(db.Boolean, nullable=False, default=False)
    subscription_activated = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)
    meta_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("gateway", "gateway_charge_id", name="uq_ledger_gateway_charge"),
    )

    @property
    def meta(self) -> dict:
        return json.loads(self.meta_json) if self.meta_json else {}

    def merge_meta(self, **values) -> None:
        data = self.meta
        data.update({k: v for k, v in values.items() if v is not None})
        self.meta_json = json.dumps(data, default=str)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "gateway": self.gateway,
            "gateway_charge_id": self.gateway_charge_id,
            "reference_id": self.reference_id,
            "status": self.status,
            "amount": str(self.amount) if self.amount is not None else None,
            "plan_type": self.plan_type,
            "processed": bool(self.processed),
            "subscription_activated": bool(self.subscription_activated),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
