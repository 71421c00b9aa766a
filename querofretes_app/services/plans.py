# querofretes_app/services/plans.py
# -*- coding: utf-8 -*-
"""
Catálogo de planos.

Durações são aproximadas em dias corridos (mensal = 30, anual = 365) e a nova
expiração é sempre calculada a partir do momento do processamento, sem somar
ao vencimento anterior.

Valores monetários circulam em centavos (int); a conversão para reais
(Decimal) acontece só na gravação do ledger e na exibição.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

TRIAL = "trial"
MONTHLY = "monthly"
ANNUAL = "annual"
DRIVER_FREE = "driver_free"

PAID_PLANS = (MONTHLY, ANNUAL)
PLAN_TYPES = (TRIAL, MONTHLY, ANNUAL, DRIVER_FREE)

PLAN_DAYS = {
    TRIAL: 7,
    MONTHLY: 30,
    ANNUAL: 365,
}

PLAN_LABELS = {
    TRIAL: "Teste gratuito",
    MONTHLY: "Mensal",
    ANNUAL: "Anual",
    DRIVER_FREE: "Motorista",
}

# grafias usadas pelos fluxos antigos (checkout, Mercado Pago, OpenPix)
_ALIASES = {
    "mensal": MONTHLY,
    "month": MONTHLY,
    "monthly": MONTHLY,
    "anual": ANNUAL,
    "annual": ANNUAL,
    "yearly": ANNUAL,
    "year": ANNUAL,
    "trial": TRIAL,
    "teste": TRIAL,
    "driver_free": DRIVER_FREE,
}


def normalize_plan_type(value, default: str | None = None) -> str | None:
    """``default`` só vale para valor ausente; grafia desconhecida -> None."""
    if value is None or not str(value).strip():
        return default
    return _ALIASES.get(str(value).strip().lower())


def plan_duration(plan_type: str, trial_days: int | None = None) -> timedelta:
    if plan_type == TRIAL and trial_days:
        return timedelta(days=int(trial_days))
    try:
        return timedelta(days=PLAN_DAYS[plan_type])
    except KeyError:
        raise ValueError(f"Plano sem duração definida: {plan_type!r}")


def plan_expiry(plan_type: str, now: datetime, trial_days: int | None = None) -> datetime:
    return now + plan_duration(plan_type, trial_days)


def to_cents(value) -> int:
    """Valor em reais (str/float/Decimal) -> centavos, sem passar por float."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError("valor monetário inválido")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"valor monetário inválido: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int | None) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(Decimal("0.01"))


def price_cents(plan_type: str, settings) -> int:
    if plan_type == MONTHLY:
        return settings.monthly_price_cents
    if plan_type == ANNUAL:
        return settings.annual_price_cents
    return 0


def infer_plan_from_amount(amount_cents: int | None, settings) -> str | None:
    """Plano pago cujo preço de tabela é o mais próximo do valor (em centavos)."""
    if not amount_cents or amount_cents <= 0:
        return None
    return min(PAID_PLANS, key=lambda p: abs(price_cents(p, settings) - int(amount_cents)))
