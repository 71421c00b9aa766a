# querofretes_app/services/gateways/mercadopago.py
# -*- coding: utf-8 -*-
"""
Mercado Pago (Checkout Pro) via REST.

A notificação só traz o id do pagamento; o status real vem de
GET /v1/payments/{id}. O vínculo com o usuário é o external_reference
(token assinado; o JSON {"userId", "planType"} dos checkouts antigos
também é aceito) e, na falta dele, o e-mail do pagador.
"""
from __future__ import annotations

import uuid

from flask import current_app

from ...extensions import db
from ...models.user import User
from ..clock import parse_iso, utcnow
from ..correlation import decode_correlation, sign_token
from ..errors import GatewayNotConfigured, GatewayUnavailable, MalformedPayload
from ..events import Lifecycle, NormalizedPaymentEvent
from ..plans import PLAN_LABELS, cents_to_decimal, infer_plan_from_amount, normalize_plan_type, price_cents, to_cents
from .base import Deadline, http_json, resolve_user_id

NAME = "mercadopago"

STATUS_MAP = {
    "approved": Lifecycle.PAID,
    "authorized": Lifecycle.PAID,
    "pending": Lifecycle.PENDING,
    "in_process": Lifecycle.PENDING,
    "in_mediation": Lifecycle.PENDING,
    "rejected": Lifecycle.REJECTED,
    "cancelled": Lifecycle.REJECTED,
    "refunded": Lifecycle.REFUNDED,
    "charged_back": Lifecycle.REFUNDED,
}

PAYMENT_TOPICS = ("payment", "payments")


def notification_target(args, body) -> tuple[str | None, str | None]:
    """(tópico, id do pagamento) de uma notificação IPN/webhook (GET ou POST)."""
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    topic = (args.get("topic") or args.get("type") or body.get("type") or body.get("topic")
             or (body.get("action") or "").split(".")[0] or None)
    payment_id = data.get("id") or args.get("data.id") or args.get("data_id") or args.get("id")
    if not payment_id and body.get("resource"):
        payment_id = str(body["resource"]).rstrip("/").rsplit("/", 1)[-1]
    return topic, (str(payment_id) if payment_id not in (None, "") else None)


class MercadoPagoGateway:
    name = NAME

    def __init__(self, settings):
        self.settings = settings

    def _headers(self) -> dict:
        if not self.settings.mercadopago_access_token:
            raise GatewayNotConfigured("Mercado Pago não configurado", gateway=NAME)
        return {"Authorization": f"Bearer {self.settings.mercadopago_access_token}"}

    def _url(self, path: str) -> str:
        return f"{self.settings.mercadopago_api_url}{path}"

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------
    def parse_notification(self, args, body, deadline: Deadline | None = None) -> NormalizedPaymentEvent | None:
        topic, payment_id = notification_target(args, body)
        if topic not in PAYMENT_TOPICS:
            current_app.logger.info("Mercado Pago: tópico '%s' ignorado", topic)
            return None
        if not payment_id:
            raise MalformedPayload("Notificação sem id de pagamento", gateway=NAME)
        deadline = deadline or Deadline(self.settings.webhook_timeout, NAME)
        payment = self.fetch_payment(payment_id, deadline)
        return self.from_payment(payment)

    def fetch_payment(self, payment_id: str, deadline: Deadline | None = None) -> dict:
        timeout = deadline.timeout(self.settings.gateway_timeout) if deadline else self.settings.gateway_timeout
        status, data = http_json("GET", self._url(f"/v1/payments/{payment_id}"),
                                 gateway=NAME, timeout=timeout, headers=self._headers())
        if status == 404:
            raise MalformedPayload(f"Pagamento {payment_id} não existe no Mercado Pago", gateway=NAME)
        if status >= 400:
            raise GatewayUnavailable(f"Mercado Pago: HTTP {status} ao consultar pagamento {payment_id}", gateway=NAME)
        return data

    def from_payment(self, payment: dict, simulated: bool = False) -> NormalizedPaymentEvent | None:
        payment_id = payment.get("id")
        if payment_id in (None, ""):
            raise MalformedPayload("Pagamento sem id", gateway=NAME)
        raw_status = payment.get("status")
        lifecycle = STATUS_MAP.get(raw_status)
        if lifecycle is None:
            current_app.logger.info("Mercado Pago: status '%s' do pagamento %s ignorado", raw_status, payment_id)
            return None

        payer = payment.get("payer") or {}
        email = payer.get("email")
        external_reference = payment.get("external_reference")
        if not external_reference and not email:
            raise MalformedPayload(f"Pagamento {payment_id} sem external_reference e sem e-mail", gateway=NAME)

        created = parse_iso(payment.get("date_created"))
        token = decode_correlation(external_reference, self.settings.token_secret,
                                   self.settings.correlation_prefix, at=created)
        if external_reference and token is None:
            current_app.logger.warning("Mercado Pago: external_reference inválido no pagamento %s", payment_id)

        payer_id = str(payer["id"]) if payer.get("id") else None
        amount = to_cents(payment.get("transaction_amount"))
        metadata = payment.get("metadata") or {}
        plan = (token.plan_type if token else None) or normalize_plan_type(metadata.get("plan_type")) \
            or infer_plan_from_amount(amount, self.settings)
        return NormalizedPaymentEvent(
            gateway=NAME,
            charge_id=str(payment_id),
            lifecycle=lifecycle,
            correlation_id=external_reference if token is not None and token.single_issuance else None,
            user_id=resolve_user_id(correlation=token, customer_field="mercadopago_customer_id",
                                    customer_id=payer_id, email=email),
            plan_type=plan,
            amount_cents=amount,
            payer_email=email,
            occurred_at=parse_iso(payment.get("date_approved")) or created,
            gateway_customer_id=payer_id,
            raw_status=raw_status,
            simulated=simulated,
        )

    # ------------------------------------------------------------------
    # chamadas de saída
    # ------------------------------------------------------------------
    def ensure_customer(self, user: User) -> str | None:
        if user.mercadopago_customer_id:
            return user.mercadopago_customer_id
        timeout = self.settings.gateway_timeout
        status, data = http_json("GET", self._url("/v1/customers/search"), gateway=NAME, timeout=timeout,
                                 headers=self._headers(), params={"email": user.email})
        results = (data.get("results") or []) if status < 400 else []
        if results:
            customer_id = results[0].get("id")
        else:
            status, data = http_json("POST", self._url("/v1/customers"), gateway=NAME, timeout=timeout,
                                     headers=self._headers(), json={"email": user.email, "first_name": user.name})
            if status >= 400:
                current_app.logger.warning("Mercado Pago: cliente não criado para %s (HTTP %s)", user.email, status)
                return None
            customer_id = data.get("id")
        if customer_id:
            user.mercadopago_customer_id = str(customer_id)
            db.session.add(user)
            db.session.commit()
        return user.mercadopago_customer_id

    def create_preference(self, user: User, plan_type: str) -> tuple[dict, str]:
        """Cria a preferência (Checkout Pro). Retorna (preferência, external_reference)."""
        amount = price_cents(plan_type, self.settings)
        if not amount:
            raise MalformedPayload(f"Plano inválido: {plan_type}", gateway=NAME)
        token = sign_token(user.id, plan_type, self.settings.token_secret, self.settings.token_ttl)
        base = self.settings.public_base_url
        payload = {
            "items": [{
                "id": plan_type,
                "title": f"QUERO FRETES - Plano {PLAN_LABELS.get(plan_type, plan_type)}",
                "quantity": 1,
                "currency_id": "BRL",
                "unit_price": float(cents_to_decimal(amount)),
            }],
            "payer": {"email": user.email, "name": user.name},
            "external_reference": token,
            "metadata": {"user_id": user.id, "plan_type": plan_type},
            "back_urls": {
                "success": f"{base}/payment-success",
                "failure": f"{base}/payment-failure",
                "pending": f"{base}/payment-pending",
            },
            "auto_return": "approved",
        }
        if base:
            payload["notification_url"] = f"{base}/api/mercadopago/webhook"
        status, data = http_json("POST", self._url("/checkout/preferences"), gateway=NAME,
                                 timeout=self.settings.gateway_timeout, headers=self._headers(), json=payload)
        if status >= 400 or not data.get("id"):
            raise GatewayUnavailable(f"Mercado Pago: falha ao criar preferência (HTTP {status})", gateway=NAME)
        return data, token

    def get_payment(self, payment_id: str) -> NormalizedPaymentEvent | None:
        return self.from_payment(self.fetch_payment(payment_id))

    def search_payments(self, limit: int = 20) -> list[dict]:
        status, data = http_json("GET", self._url("/v1/payments/search"), gateway=NAME,
                                 timeout=self.settings.gateway_timeout, headers=self._headers(),
                                 params={"sort": "date_created", "criteria": "desc", "limit": limit})
        if status >= 400:
            raise GatewayUnavailable(f"Mercado Pago: HTTP {status} na busca de pagamentos", gateway=NAME)
        return [
            {
                "id": p.get("id"),
                "status": p.get("status"),
                "amount_cents": to_cents(p.get("transaction_amount")),
                "payer_email": (p.get("payer") or {}).get("email"),
                "external_reference": p.get("external_reference"),
                "created_at": parse_iso(p.get("date_created")),
            }
            for p in data.get("results") or []
        ]

    def simulated_payment(self, user: User, plan_type: str, status: str = "approved") -> dict:
        """Pagamento sintético (apenas fora de produção) no formato de /v1/payments."""
        now = utcnow()
        amount = price_cents(plan_type, self.settings)
        return {
            "id": f"sim-{uuid.uuid4().hex[:12]}",
            "status": status,
            "external_reference": sign_token(user.id, plan_type, self.settings.token_secret,
                                             self.settings.token_ttl, now=now),
            "transaction_amount": str(cents_to_decimal(amount)),
            "payer": {"email": user.email},
            "date_created": now.isoformat() + "Z",
            "metadata": {"plan_type": plan_type},
        }
