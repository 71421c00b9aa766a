# querofretes_app/services/gateways/base.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import time

import requests

from ...models.user import User
from ..errors import GatewayUnavailable


class Deadline:
    """Orçamento de tempo de um webhook: enriquecimento + conciliação."""

    def __init__(self, budget: float, gateway: str | None = None):
        self.budget = float(budget)
        self.gateway = gateway
        self.started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def remaining(self) -> float:
        return max(self.budget - self.elapsed(), 0.0)

    def timeout(self, per_call: float) -> float:
        """Timeout de uma chamada externa, limitado ao que sobra do orçamento."""
        self.check()
        return min(float(per_call), self.remaining())

    def check(self) -> None:
        if self.elapsed() >= self.budget:
            raise GatewayUnavailable(
                f"Tempo do webhook esgotado ({self.elapsed():.1f}s de {self.budget:.0f}s)",
                gateway=self.gateway,
            )


def resolve_user_id(*, correlation=None, customer_field: str | None = None,
                    customer_id: str | None = None, email: str | None = None) -> int | None:
    """Token de correlação, depois id de cliente no gateway, depois e-mail do pagador."""
    if correlation is not None and correlation.user_id:
        return int(correlation.user_id)
    if customer_field and customer_id:
        user = User.query.filter(getattr(User, customer_field) == customer_id).first()
        if user:
            return user.id
    if email:
        user = User.query.filter(User.email.ilike(email.strip())).first()
        if user:
            return user.id
    return None


def http_json(method: str, url: str, *, gateway: str, timeout: float, **kwargs):
    """Chamada REST com timeout; rede/HTTP 5xx viram GatewayUnavailable."""
    call = requests.post if method.upper() == "POST" else requests.get
    try:
        r = call(url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise GatewayUnavailable(f"{gateway}: falha de comunicação ({e})", gateway=gateway)
    if r.status_code >= 500 or r.status_code == 429:
        raise GatewayUnavailable(f"{gateway}: HTTP {r.status_code}", gateway=gateway)
    try:
        data = r.json()
    except ValueError:
        data = {}
    return r.status_code, data
