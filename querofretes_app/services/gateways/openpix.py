# querofretes_app/services/gateways/openpix.py
# -*- coding: utf-8 -*-
"""
OpenPix (Pix) via REST.

A cobrança carrega um correlationID ``<prefixo>-<userId>-<epochMillis>`` e o
plano em additionalInfo. Valores da API já vêm em centavos.
"""
from __future__ import annotations

import hmac
import uuid

from ...models.user import User
from ..clock import parse_iso, utcnow
from ..correlation import new_reference, parse_reference
from ..errors import GatewayNotConfigured, GatewayUnavailable, MalformedPayload
from ..events import Lifecycle, NormalizedPaymentEvent
from ..plans import PLAN_LABELS, infer_plan_from_amount, normalize_plan_type, price_cents
from .base import http_json, resolve_user_id

NAME = "openpix"

EVENT_MAP = {
    "OPENPIX:CHARGE_COMPLETED": Lifecycle.PAID,
    "OPENPIX:CHARGE_EXPIRED": Lifecycle.EXPIRED,
    "OPENPIX:TRANSACTION_REFUND_RECEIVED": Lifecycle.REFUNDED,
    "OPENPIX:CHARGE_CREATED": Lifecycle.PENDING,
}

STATUS_MAP = {
    "COMPLETED": Lifecycle.PAID,
    "EXPIRED": Lifecycle.EXPIRED,
    "ACTIVE": Lifecycle.PENDING,
}

TEST_PING = "teste_webhook"


def is_test_ping(body) -> bool:
    return isinstance(body, dict) and body.get("evento") == TEST_PING


def additional_info(charge: dict, key: str):
    for item in charge.get("additionalInfo") or []:
        if isinstance(item, dict) and item.get("key") == key:
            return item.get("value")
    return None


class OpenPixGateway:
    name = NAME

    def __init__(self, settings):
        self.settings = settings

    def _headers(self) -> dict:
        if not self.settings.openpix_app_id:
            raise GatewayNotConfigured("OpenPix não configurado", gateway=NAME)
        return {"Authorization": self.settings.openpix_app_id}

    def _url(self, path: str) -> str:
        return f"{self.settings.openpix_api_url}{path}"

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------
    def authorize(self, header_value: str | None) -> bool:
        """Sem segredo configurado, aceita; com segredo, compara em tempo constante."""
        secret = self.settings.openpix_webhook_secret
        if not secret:
            return True
        return hmac.compare_digest((header_value or "").encode(), secret.encode())

    def parse(self, body: dict, simulated: bool = False) -> NormalizedPaymentEvent | None:
        if not isinstance(body, dict):
            raise MalformedPayload("Corpo do webhook não é um objeto JSON", gateway=NAME)
        charge = body.get("charge")
        if not isinstance(charge, dict):
            raise MalformedPayload("Webhook sem 'charge'", gateway=NAME)
        correlation = charge.get("correlationID")
        charge_id = charge.get("identifier") or charge.get("transactionID") or correlation
        if not charge_id:
            raise MalformedPayload("Cobrança sem identificador", gateway=NAME)

        event_name = body.get("event")
        status = charge.get("status")
        lifecycle = EVENT_MAP.get(event_name) or STATUS_MAP.get(status)
        if lifecycle is None:
            return None

        token = parse_reference(correlation, self.settings.correlation_prefix)
        amount = _int(charge.get("value"))
        customer = charge.get("customer") or {}
        email = customer.get("email")
        user_id = resolve_user_id(correlation=token, email=email)
        if user_id is None:
            user_id = _int(additional_info(charge, "userId"))
        plan = normalize_plan_type(additional_info(charge, "planType")) or infer_plan_from_amount(amount, self.settings)
        pix = body.get("pix") or {}
        return NormalizedPaymentEvent(
            gateway=NAME,
            charge_id=str(charge_id),
            lifecycle=lifecycle,
            correlation_id=correlation,
            user_id=user_id,
            plan_type=plan,
            amount_cents=amount,
            payer_email=email,
            reference_ids=tuple(str(x) for x in (correlation, pix.get("endToEndId")) if x),
            occurred_at=parse_iso(charge.get("paidAt") or pix.get("time") or charge.get("updatedAt")),
            raw_status=status or event_name,
            simulated=simulated,
        )

    # ------------------------------------------------------------------
    # chamadas de saída
    # ------------------------------------------------------------------
    def create_charge(self, user: User, plan_type: str) -> dict:
        amount = price_cents(plan_type, self.settings)
        if not amount:
            raise MalformedPayload(f"Tipo de plano inválido: {plan_type}", gateway=NAME)
        correlation = new_reference(user.id, self.settings.correlation_prefix)
        payload = {
            "correlationID": correlation,
            "value": amount,
            "comment": f"Assinatura {PLAN_LABELS.get(plan_type, plan_type)} - QUERO FRETES",
            "customer": {"name": user.name, "email": user.email},
            "additionalInfo": [
                {"key": "userId", "value": str(user.id)},
                {"key": "planType", "value": plan_type},
                {"key": "source", "value": "querofretes-web"},
            ],
        }
        status, data = http_json("POST", self._url("/charge/"), gateway=NAME,
                                 timeout=self.settings.gateway_timeout, headers=self._headers(), json=payload)
        charge = data.get("charge") or {}
        if status >= 400 or not charge:
            raise GatewayUnavailable(f"OpenPix: falha ao criar cobrança (HTTP {status})", gateway=NAME)
        charge.setdefault("correlationID", correlation)
        return charge

    def get_charge(self, charge_id: str) -> dict:
        status, data = http_json("GET", self._url(f"/charge/{charge_id}"), gateway=NAME,
                                 timeout=self.settings.gateway_timeout, headers=self._headers())
        if status == 404:
            raise MalformedPayload(f"Cobrança {charge_id} não encontrada", gateway=NAME)
        if status >= 400:
            raise GatewayUnavailable(f"OpenPix: HTTP {status} ao consultar cobrança", gateway=NAME)
        return data.get("charge") or {}

    def sync_event(self, charge_id: str) -> NormalizedPaymentEvent | None:
        """Consulta a cobrança e monta o mesmo evento que o webhook montaria."""
        charge = self.get_charge(charge_id)
        if not charge:
            return None
        return self.parse({"charge": charge})

    def list_charges(self, limit: int = 20) -> list[dict]:
        status, data = http_json("GET", self._url("/charge"), gateway=NAME,
                                 timeout=self.settings.gateway_timeout, headers=self._headers(),
                                 params={"limit": limit})
        if status >= 400:
            raise GatewayUnavailable(f"OpenPix: HTTP {status} ao listar cobranças", gateway=NAME)
        return [
            {
                "id": c.get("identifier"),
                "correlation_id": c.get("correlationID"),
                "status": c.get("status"),
                "amount_cents": _int(c.get("value")),
                "created_at": parse_iso(c.get("createdAt")),
            }
            for c in data.get("charges") or []
        ]

    def simulated_webhook(self, user: User, plan_type: str) -> dict:
        """Payload no formato do webhook CHARGE_COMPLETED (apenas fora de produção)."""
        amount = price_cents(plan_type, self.settings)
        now = utcnow().isoformat() + "Z"
        return {
            "event": "OPENPIX:CHARGE_COMPLETED",
            "charge": {
                "identifier": f"sim-{uuid.uuid4().hex[:12]}",
                "correlationID": new_reference(user.id, self.settings.correlation_prefix),
                "status": "COMPLETED",
                "value": amount,
                "customer": {"name": user.name, "email": user.email},
                "additionalInfo": [{"key": "planType", "value": plan_type}],
                "paidAt": now,
            },
            "pix": {"value": amount, "time": now},
        }


def _int(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
