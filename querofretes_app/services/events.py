# querofretes_app/services/events.py
# -*- coding: utf-8 -*-
"""
Tipos trocados entre adaptadores de gateway, motor de conciliação e
despachante de notificações.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Lifecycle(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    REFUNDED = "refunded"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Outcome(str, Enum):
    ACTIVATED = "activated"
    DUPLICATE = "duplicate"
    PENDING_RECORDED = "pending_recorded"
    REFUNDED = "refunded"
    REJECTED = "rejected"
    EXPIRED = "expired"
    USER_NOT_FOUND = "user_not_found"
    IGNORED = "ignored"


@dataclass
class NormalizedPaymentEvent:
    """Notificação de qualquer gateway já traduzida para o vocabulário interno."""

    gateway: str
    charge_id: str
    lifecycle: Lifecycle
    correlation_id: str | None = None
    user_id: int | None = None
    plan_type: str | None = None
    amount_cents: int | None = None
    payer_email: str | None = None
    reference_ids: tuple = ()
    occurred_at: datetime | None = None
    provider_subscription_id: str | None = None
    gateway_customer_id: str | None = None
    raw_status: str | None = None
    simulated: bool = False

    def lookup_ids(self) -> list[str]:
        """charge_id seguido dos ids alternativos, sem repetição."""
        ids = []
        for value in (self.charge_id, *self.reference_ids):
            if value and str(value) not in ids:
                ids.append(str(value))
        return ids


@dataclass(frozen=True)
class SideEffectIntent:
    channel: str            # email | whatsapp
    template: str           # subscription_confirmed, subscription_cancelled, subscription_expired
    recipient: str
    context: dict = field(default_factory=dict)


@dataclass
class ReconciliationResult:
    outcome: Outcome
    ledger_entry_id: int | None = None
    user_id: int | None = None
    side_effects: list[SideEffectIntent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "ledger_entry_id": self.ledger_entry_id,
            "user_id": self.user_id,
        }
