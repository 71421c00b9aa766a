# querofretes_app/models/subscription.py
from __future__ import annotations
from datetime import datetime
from ..extensions import db

class SubscriptionRecord(db.Model):
    __tablename__ = "subscriptions"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)

    status = db.Column(db.String(20), default="pending", index=True)  # active, pending, canceled, expired
    plan_type = db.Column(db.String(20))
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)     # data de expiração

    # referências do gateway
    gateway = db.Column(db.String(20))
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("payment_ledger.id"), nullable=True)
    provider_sub_id = db.Column(db.String(120), index=True)
    meta_json = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "plan_type": self.plan_type,
            "gateway": self.gateway,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
        }

class SubscriptionEvent(db.Model):
    __tablename__ = "subscription_events"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    event_type = db.Column(db.String(40), nullable=False)   # payment_success, payment_refunded, subscription_expired...
    plan_type = db.Column(db.String(20))
    gateway = db.Column(db.String(20))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
