# querofretes_app/models/user.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from datetime import datetime
from ..extensions import db, bcrypt

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(180), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))                                   # WhatsApp (DDI+DDD+número)
    profile_type = db.Column(db.String(20), default="shipper")         # shipper, driver, agent
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # acesso/assinatura
    subscription_active = db.Column(db.Boolean, nullable=False, default=False, index=True)
    subscription_type = db.Column(db.String(20))                       # trial, monthly, annual, driver_free
    subscription_expires_at = db.Column(db.DateTime, index=True)       # NULL só para driver_free
    payment_required = db.Column(db.Boolean, nullable=False, default=False)
    refunded_at = db.Column(db.DateTime)

    # clientes nos gateways (OpenPix não tem: só correlationID)
    stripe_customer_id = db.Column(db.String(120), index=True)
    stripe_subscription_id = db.Column(db.String(120))
    mercadopago_customer_id = db.Column(db.String(120))

    ledger_entries = db.relationship("PaymentLedgerEntry", backref="user", lazy="dynamic")

    def set_password(self, raw: str) -> None:
        self.password_hash = bcrypt.generate_password_hash(raw).decode("utf-8")

    def check_password(self, raw: str) -> bool:
        return bcrypt.check_password_hash(self.password_hash, raw)

    def has_access(self, now: datetime | None = None) -> bool:
        if not self.subscription_active:
            return False
        if self.subscription_expires_at is None:
            return self.subscription_type == "driver_free"
        return self.subscription_expires_at > (now or datetime.utcnow())

    def entitlement_dict(self) -> dict:
        exp = self.subscription_expires_at
        return {
            "subscription_active": bool(self.subscription_active),
            "subscription_type": self.subscription_type,
            "subscription_expires_at": exp.isoformat() if exp else None,
            "payment_required": bool(self.payment_required),
            "has_access": self.has_access(),
        }
