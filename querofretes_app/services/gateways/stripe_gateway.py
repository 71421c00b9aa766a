# querofretes_app/services/gateways/stripe_gateway.py
# -*- coding: utf-8 -*-
"""
Stripe: checkout em modo assinatura + webhooks.

Eventos tratados:
  checkout.session.completed      -> paid (ou pending se ainda não pago)
  invoice.paid / payment_succeeded -> paid (renovações são cobranças novas)
  invoice.payment_failed          -> rejected
  charge.refunded                 -> refunded
  customer.subscription.deleted   -> cancelamento do registro (rota chama o motor)
"""
from __future__ import annotations

import stripe
from flask import current_app

from ...extensions import db
from ...models.user import User
from ..clock import from_timestamp
from ..correlation import new_reference, parse_reference
from ..errors import GatewayNotConfigured, GatewayUnavailable, MalformedPayload
from ..events import Lifecycle, NormalizedPaymentEvent
from ..plans import ANNUAL, MONTHLY, infer_plan_from_amount, normalize_plan_type
from .base import Deadline, resolve_user_id

NAME = "stripe"

PAID_EVENTS = ("invoice.paid", "invoice.payment_succeeded")
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _get(obj, *path, default=None):
    """Navega em dict/StripeObject sem estourar KeyError/AttributeError."""
    cur = obj
    for key in path:
        if cur is None:
            return default
        try:
            cur = cur.get(key)
        except AttributeError:
            cur = getattr(cur, key, None)
    return default if cur is None else cur


def _id(value):
    """Campos expansíveis chegam como id (str) ou como objeto."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


class StripeGateway:
    name = NAME

    def __init__(self, settings):
        self.settings = settings

    def _stripe(self):
        if not self.settings.stripe_secret_key:
            raise GatewayNotConfigured("Stripe não configurado", gateway=NAME)
        stripe.api_key = self.settings.stripe_secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=self.settings.gateway_timeout)
        return stripe

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------
    def construct_event(self, payload: bytes, signature: str):
        try:
            return stripe.Webhook.construct_event(payload, signature, self.settings.stripe_webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise MalformedPayload(f"Assinatura/payload inválido: {e}", gateway=NAME)

    def parse(self, event, deadline: Deadline | None = None) -> NormalizedPaymentEvent | None:
        """Evento Stripe -> NormalizedPaymentEvent. Tipos sem interesse -> None."""
        typ = _get(event, "type")
        obj = _get(event, "data", "object")
        if not typ or obj is None:
            raise MalformedPayload("Evento sem type/data.object", gateway=NAME)
        deadline = deadline or Deadline(self.settings.webhook_timeout, NAME)
        occurred = from_timestamp(_get(event, "created"))

        if typ == "checkout.session.completed":
            return self.from_checkout_session(obj, occurred)
        if typ in PAID_EVENTS:
            return self._from_invoice(obj, Lifecycle.PAID, occurred, deadline)
        if typ == "invoice.payment_failed":
            return self._from_invoice(obj, Lifecycle.REJECTED, occurred, deadline)
        if typ == "charge.refunded":
            return self._from_charge(obj, occurred)
        return None

    def from_checkout_session(self, session, occurred=None) -> NormalizedPaymentEvent:
        session_id = _get(session, "id")
        if not session_id:
            raise MalformedPayload("checkout.session sem id", gateway=NAME)
        ref = _get(session, "client_reference_id")
        token = parse_reference(ref, self.settings.correlation_prefix)
        metadata = _get(session, "metadata", default={})
        user_id = token.user_id if token else _int(_get(metadata, "userId"))
        customer_id = _id(_get(session, "customer"))
        email = _get(session, "customer_details", "email") or _get(session, "customer_email")
        if user_id is None:
            user_id = resolve_user_id(customer_field="stripe_customer_id", customer_id=customer_id, email=email)

        charge_id = _id(_get(session, "payment_intent")) or _id(_get(session, "invoice")) or session_id
        paid = _get(session, "payment_status") in ("paid", "no_payment_required")
        amount = _get(session, "amount_total")
        return NormalizedPaymentEvent(
            gateway=NAME,
            charge_id=charge_id,
            lifecycle=Lifecycle.PAID if paid else Lifecycle.PENDING,
            correlation_id=ref,
            user_id=user_id,
            plan_type=normalize_plan_type(_get(metadata, "planType")) or infer_plan_from_amount(amount, self.settings),
            amount_cents=_int(amount),
            payer_email=email,
            reference_ids=(session_id,),
            occurred_at=occurred,
            provider_subscription_id=_id(_get(session, "subscription")),
            gateway_customer_id=customer_id,
            raw_status=_get(session, "payment_status"),
        )

    def _subscription_metadata(self, invoice) -> dict:
        for path in (("subscription_details", "metadata"),
                     ("parent", "subscription_details", "metadata")):
            md = _get(invoice, *path)
            if md:
                return md
        lines = _get(invoice, "lines", "data", default=[])
        return _get(lines[0], "metadata", default={}) if lines else {}

    def _plan_from_invoice(self, invoice, metadata) -> str | None:
        plan = normalize_plan_type(_get(metadata, "planType"))
        if plan:
            return plan
        lines = _get(invoice, "lines", "data", default=[])
        price_id = _get(lines[0], "price", "id") if lines else None
        if price_id and price_id == self.settings.stripe_price_annual_id:
            return ANNUAL
        if price_id and price_id == self.settings.stripe_price_monthly_id:
            return MONTHLY
        return infer_plan_from_amount(_get(invoice, "amount_paid") or _get(invoice, "amount_due"), self.settings)

    def _from_invoice(self, invoice, lifecycle, occurred, deadline) -> NormalizedPaymentEvent:
        invoice_id = _get(invoice, "id")
        if not invoice_id:
            raise MalformedPayload("invoice sem id", gateway=NAME)
        metadata = self._subscription_metadata(invoice)
        customer_id = _id(_get(invoice, "customer"))
        email = _get(invoice, "customer_email")

        correlation = None
        user_id = None
        # só a primeira fatura pertence ao checkout; renovações são cobranças novas
        if _get(invoice, "billing_reason") == "subscription_create":
            correlation = _get(metadata, "correlationId")
            token = parse_reference(correlation, self.settings.correlation_prefix)
            user_id = token.user_id if token else _int(_get(metadata, "userId"))
        if user_id is None:
            user_id = resolve_user_id(customer_field="stripe_customer_id", customer_id=customer_id, email=email)
        if user_id is None and customer_id and not email:
            email = self._customer_email(customer_id, deadline)
            user_id = resolve_user_id(email=email)

        amount = _get(invoice, "amount_paid") if lifecycle == Lifecycle.PAID else _get(invoice, "amount_due")
        return NormalizedPaymentEvent(
            gateway=NAME,
            charge_id=_id(_get(invoice, "payment_intent")) or invoice_id,
            lifecycle=lifecycle,
            correlation_id=correlation,
            user_id=user_id,
            plan_type=self._plan_from_invoice(invoice, metadata),
            amount_cents=_int(amount),
            payer_email=email,
            reference_ids=(invoice_id,),
            occurred_at=occurred,
            provider_subscription_id=_id(_get(invoice, "subscription"))
            or _get(invoice, "parent", "subscription_details", "subscription"),
            gateway_customer_id=customer_id,
            raw_status=_get(invoice, "status"),
        )

    def _from_charge(self, charge, occurred) -> NormalizedPaymentEvent | None:
        charge_id = _get(charge, "id")
        if not charge_id:
            raise MalformedPayload("charge sem id", gateway=NAME)
        amount = _int(_get(charge, "amount"))
        refunded = _int(_get(charge, "amount_refunded"))
        if _get(charge, "refunded") is not True and not (amount and refunded and refunded >= amount):
            # estorno parcial não revoga o acesso
            current_app.logger.info("Stripe: estorno parcial da charge %s (%s de %s) ignorado",
                                    charge_id, refunded, amount)
            return None
        customer_id = _id(_get(charge, "customer"))
        email = _get(charge, "billing_details", "email") or _get(charge, "receipt_email")
        invoice_id = _id(_get(charge, "invoice"))
        return NormalizedPaymentEvent(
            gateway=NAME,
            charge_id=_id(_get(charge, "payment_intent")) or charge_id,
            lifecycle=Lifecycle.REFUNDED,
            user_id=resolve_user_id(customer_field="stripe_customer_id", customer_id=customer_id, email=email),
            amount_cents=refunded,
            payer_email=email,
            reference_ids=tuple(x for x in (invoice_id, charge_id) if x),
            occurred_at=occurred,
            gateway_customer_id=customer_id,
            raw_status="refunded",
        )

    def _customer_email(self, customer_id: str, deadline: Deadline) -> str | None:
        deadline.check()
        s = self._stripe()
        try:
            customer = s.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe: falha ao consultar cliente {customer_id} ({e})", gateway=NAME)
        return _get(customer, "email")

    # ------------------------------------------------------------------
    # chamadas de saída
    # ------------------------------------------------------------------
    def price_id(self, plan_type: str) -> str:
        price = {
            MONTHLY: self.settings.stripe_price_monthly_id,
            ANNUAL: self.settings.stripe_price_annual_id,
        }.get(plan_type)
        if not price:
            raise GatewayNotConfigured(f"Plano {plan_type} sem price_id do Stripe", gateway=NAME)
        return price

    def ensure_customer(self, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        s = self._stripe()
        cust = s.Customer.create(email=user.email, name=user.name, metadata={"user_id": user.id})
        user.stripe_customer_id = cust.id
        db.session.add(user)
        db.session.commit()
        return cust.id

    def create_checkout(self, user: User, plan_type: str, success_url: str, cancel_url: str):
        """Cria a Checkout Session; retorna (session, correlation_id)."""
        price = self.price_id(plan_type)
        customer_id = self.ensure_customer(user)
        ref = new_reference(user.id, self.settings.correlation_prefix)
        metadata = {"userId": str(user.id), "planType": plan_type, "correlationId": ref}
        s = self._stripe()
        try:
            sess = s.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=ref,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe: falha ao criar checkout ({e})", gateway=NAME)
        current_app.logger.info("Checkout Stripe %s criado para user=%s plano=%s", _get(sess, "id"), user.id, plan_type)
        return sess, ref

    def portal_url(self, user: User, return_url: str) -> str:
        if not user.stripe_customer_id:
            raise MalformedPayload("Cliente não encontrado no Stripe", gateway=NAME)
        s = self._stripe()
        portal = s.billing_portal.Session.create(customer=user.stripe_customer_id, return_url=return_url)
        return portal.url

    def retrieve_session(self, session_id: str) -> NormalizedPaymentEvent:
        s = self._stripe()
        try:
            session = s.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            raise MalformedPayload(f"Sessão {session_id} não encontrada ({e})", gateway=NAME)
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe: falha ao consultar sessão ({e})", gateway=NAME)
        return self.from_checkout_session(session)

    def list_charges(self, limit: int = 20) -> list[dict]:
        s = self._stripe()
        try:
            charges = s.Charge.list(limit=limit)
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe: falha ao listar cobranças ({e})", gateway=NAME)
        return [
            {
                "id": _get(c, "id"),
                "amount_cents": _get(c, "amount"),
                "status": _get(c, "status"),
                "refunded": bool(_get(c, "refunded")),
                "customer": _id(_get(c, "customer")),
                "created_at": from_timestamp(_get(c, "created")),
            }
            for c in _get(charges, "data", default=[])
        ]


def _int(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
