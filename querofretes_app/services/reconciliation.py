# querofretes_app/services/reconciliation.py
# -*- coding: utf-8 -*-
"""
Motor de conciliação: única porta de escrita do direito de acesso a partir
de pagamentos, qualquer que seja o gateway.

Garantias:
  * cada cobrança (gateway, gateway_charge_id) ativa o usuário no máximo uma vez;
    a reivindicação é um UPDATE condicional em ``processed = false`` e quem
    perde a corrida desfaz a transação e recebe DUPLICATE;
  * reivindicação, usuário, ledger, assinatura e log de eventos são gravados
    na mesma transação;
  * e-mail/WhatsApp só saem depois do commit (lista de SideEffectIntent).
"""
from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models.payment import (
    PaymentLedgerEntry, LEDGER_PENDING, LEDGER_COMPLETED, LEDGER_REFUNDED,
    LEDGER_EXPIRED, LEDGER_REJECTED, LEDGER_USER_NOT_FOUND,
)
from ..models.subscription import SubscriptionRecord, SubscriptionEvent
from ..models.user import User
from .clock import utcnow
from .errors import TrialNotAllowed
from .events import (
    Lifecycle, NormalizedPaymentEvent, Outcome, ReconciliationResult, SideEffectIntent,
)
from .notifications import EMAIL, WHATSAPP, CONFIRMED, CANCELLED
from .plans import (
    PAID_PLANS, MONTHLY, TRIAL, cents_to_decimal, infer_plan_from_amount,
    normalize_plan_type, plan_expiry,
)
from .settings import BillingSettings

VIA_CHARGE = "charge"
VIA_ALTERNATE = "alternate"
VIA_CORRELATION = "correlation"

SUB_ACTIVE = "active"
SUB_PENDING = "pending"
SUB_CANCELED = "canceled"
SUB_EXPIRED = "expired"


def log_event(user_id: int, event_type: str, *, plan_type=None, gateway=None, **details) -> None:
    """Registra um SubscriptionEvent na transação corrente (sem commit)."""
    db.session.add(SubscriptionEvent(
        user_id=user_id,
        event_type=event_type,
        plan_type=plan_type,
        gateway=gateway,
        details=json.dumps({k: v for k, v in details.items() if v is not None}, default=str) if details else None,
    ))


def notification_intents(user: User, template: str, **context) -> list[SideEffectIntent]:
    ctx = {"name": user.name, **context}
    intents = [SideEffectIntent(EMAIL, template, user.email, ctx)]
    if user.phone:
        intents.append(SideEffectIntent(WHATSAPP, template, user.phone, ctx))
    return intents


class ReconciliationEngine:
    def __init__(self, settings: BillingSettings, dispatcher=None):
        self.settings = settings
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------
    def register_charge(self, *, gateway: str, charge_id: str, user_id: int, plan_type: str | None,
                        amount_cents: int | None = None, correlation_id: str | None = None,
                        reference_id: str | None = None, meta: dict | None = None,
                        now: datetime | None = None) -> PaymentLedgerEntry:
        """Cobrança criada no gateway: grava entrada pendente (idempotente)."""
        now = now or utcnow()
        entry = PaymentLedgerEntry(
            user_id=user_id,
            gateway=gateway,
            gateway_charge_id=str(charge_id),
            reference_id=reference_id,
            correlation_id=correlation_id,
            status=LEDGER_PENDING,
            amount=cents_to_decimal(amount_cents),
            plan_type=plan_type,
            created_at=now,
            updated_at=now,
        )
        if meta:
            entry.merge_meta(**meta)
        try:
            db.session.add(entry)
            db.session.flush()
            log_event(user_id, "payment_pending", plan_type=plan_type, gateway=gateway, charge_id=str(charge_id))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            entry = self._by_charge(gateway, charge_id)
        except SQLAlchemyError:
            db.session.rollback()
            raise
        current_app.logger.info("Cobrança %s/%s registrada (user=%s, plano=%s)",
                                gateway, charge_id, user_id, plan_type)
        return entry

    def apply(self, event: NormalizedPaymentEvent, now: datetime | None = None) -> ReconciliationResult:
        """Aplica uma notificação normalizada e despacha as notificações após o commit."""
        now = now or utcnow()
        try:
            result = self._apply(event, now)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Falha de persistência ao conciliar %s/%s", event.gateway, event.charge_id)
            raise
        current_app.logger.info("Conciliação %s/%s (%s): %s user=%s entry=%s",
                                event.gateway, event.charge_id, event.lifecycle.value,
                                result.outcome.value, result.user_id, result.ledger_entry_id)
        if result.side_effects and self.dispatcher is not None:
            self.dispatcher.submit(result.side_effects)
        return result

    def cancel_provider_subscription(self, gateway: str, provider_sub_id: str,
                                     now: datetime | None = None) -> int:
        """Assinatura recorrente cancelada no gateway: o acesso segue até o vencimento."""
        now = now or utcnow()
        records = SubscriptionRecord.query.filter(
            SubscriptionRecord.gateway == gateway,
            SubscriptionRecord.provider_sub_id == provider_sub_id,
            SubscriptionRecord.status.in_([SUB_ACTIVE, SUB_PENDING]),
        ).all()
        try:
            for rec in records:
                rec.status = SUB_CANCELED
                rec.updated_at = now
                log_event(rec.user_id, "subscription_canceled", plan_type=rec.plan_type,
                          gateway=gateway, provider_sub_id=provider_sub_id)
            users = User.query.filter_by(stripe_subscription_id=provider_sub_id).all() if gateway == "stripe" else []
            for u in users:
                u.stripe_subscription_id = None
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        current_app.logger.info("Assinatura %s/%s cancelada (%d registro(s))", gateway, provider_sub_id, len(records))
        return len(records)

    def start_trial(self, user: User, now: datetime | None = None) -> list[SideEffectIntent]:
        """Período de teste para quem nunca teve assinatura."""
        now = now or utcnow()
        had_subscription = (
            user.subscription_type is not None
            or SubscriptionRecord.query.filter_by(user_id=user.id).first() is not None
            or user.ledger_entries.filter(PaymentLedgerEntry.processed.is_(True)).first() is not None
        )
        if had_subscription:
            raise TrialNotAllowed("Período de teste já utilizado")

        expires = plan_expiry(TRIAL, now, self.settings.trial_days)
        user.subscription_active = True
        user.subscription_type = TRIAL
        user.subscription_expires_at = expires
        user.payment_required = False
        db.session.add(SubscriptionRecord(
            user_id=user.id, status=SUB_ACTIVE, plan_type=TRIAL,
            current_period_start=now, current_period_end=expires,
        ))
        log_event(user.id, "trial_started", plan_type=TRIAL, expires_at=expires.isoformat())
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        intents = notification_intents(user, CONFIRMED, plan_type=TRIAL, expires_at=expires)
        if self.dispatcher is not None:
            self.dispatcher.submit(intents)
        return intents

    # ------------------------------------------------------------------
    # localização / resolução
    # ------------------------------------------------------------------
    def _by_charge(self, gateway: str, charge_id) -> PaymentLedgerEntry | None:
        return PaymentLedgerEntry.query.filter_by(gateway=gateway, gateway_charge_id=str(charge_id)).first()

    def locate(self, event: NormalizedPaymentEvent) -> tuple[PaymentLedgerEntry | None, str | None]:
        """charge_id, depois ids alternativos, depois correlation_id (no mesmo gateway)."""
        entry = self._by_charge(event.gateway, event.charge_id)
        if entry:
            return entry, VIA_CHARGE

        ids = event.lookup_ids()
        q = PaymentLedgerEntry.query.filter(PaymentLedgerEntry.gateway == event.gateway)
        conditions = [PaymentLedgerEntry.reference_id.in_(ids)]
        if len(ids) > 1:
            conditions.append(PaymentLedgerEntry.gateway_charge_id.in_(ids[1:]))
        entry = q.filter(or_(*conditions)).order_by(PaymentLedgerEntry.id.asc()).first()
        if entry:
            return entry, VIA_ALTERNATE

        if event.correlation_id:
            entry = (q.filter(PaymentLedgerEntry.correlation_id == event.correlation_id)
                     .order_by(PaymentLedgerEntry.processed.desc(), PaymentLedgerEntry.id.desc())
                     .first())
            if entry:
                return entry, VIA_CORRELATION
        return None, None

    def _resolve_user(self, event: NormalizedPaymentEvent, entry: PaymentLedgerEntry | None) -> User | None:
        for uid in (event.user_id, entry.user_id if entry else None):
            if uid is None:
                continue
            user = db.session.get(User, int(uid))
            if user:
                return user
        return None

    def _plan_for(self, event: NormalizedPaymentEvent, entry: PaymentLedgerEntry | None) -> str:
        for candidate in (event.plan_type, entry.plan_type if entry else None):
            plan = normalize_plan_type(candidate)
            if plan in PAID_PLANS:
                return plan
        amount = event.amount_cents
        if not amount and entry is not None and entry.amount:
            amount = int(entry.amount * 100)
        plan = infer_plan_from_amount(amount, self.settings)
        if plan:
            return plan
        current_app.logger.warning("Plano não identificado para %s/%s; usando mensal",
                                   event.gateway, event.charge_id)
        return MONTHLY

    def _insert_entry(self, event: NormalizedPaymentEvent, user: User, status: str,
                      now: datetime) -> tuple[PaymentLedgerEntry, bool]:
        """Insere a entrada; se outra requisição ganhou a corrida, relê a dela."""
        entry = PaymentLedgerEntry(
            user_id=user.id,
            gateway=event.gateway,
            gateway_charge_id=str(event.charge_id),
            correlation_id=event.correlation_id,
            status=status,
            amount=cents_to_decimal(event.amount_cents),
            plan_type=normalize_plan_type(event.plan_type),
            created_at=now,
            updated_at=now,
        )
        entry.merge_meta(raw_status=event.raw_status, simulated=event.simulated or None)
        try:
            db.session.add(entry)
            db.session.flush()
            return entry, True
        except IntegrityError:
            db.session.rollback()
            existing = self._by_charge(event.gateway, event.charge_id)
            if existing is None:
                raise
            return existing, False

    @staticmethod
    def _adopt_charge_id(entry: PaymentLedgerEntry, event: NormalizedPaymentEvent) -> None:
        if entry.gateway_charge_id == str(event.charge_id):
            return
        if not entry.reference_id:
            entry.reference_id = entry.gateway_charge_id
        entry.gateway_charge_id = str(event.charge_id)
        db.session.flush()

    # ------------------------------------------------------------------
    # transições
    # ------------------------------------------------------------------
    def _apply(self, event: NormalizedPaymentEvent, now: datetime) -> ReconciliationResult:
        entry, via = self.locate(event)
        user = self._resolve_user(event, entry)

        if user is None:
            return self._user_not_found(event, entry, now)

        if event.lifecycle == Lifecycle.PAID:
            return self._paid(event, entry, via, user, now)
        if event.lifecycle == Lifecycle.REFUNDED:
            return self._refunded(event, entry, user, now)
        if event.lifecycle == Lifecycle.PENDING:
            return self._pending(event, entry, via, user, now)
        if event.lifecycle in (Lifecycle.REJECTED, Lifecycle.EXPIRED):
            return self._failed(event, entry, via, user, now)
        return ReconciliationResult(Outcome.IGNORED, entry.id if entry else None, user.id)

    def _user_not_found(self, event, entry, now) -> ReconciliationResult:
        current_app.logger.warning("Usuário não identificado para %s/%s (correlação=%s, email=%s)",
                                   event.gateway, event.charge_id, event.correlation_id, event.payer_email)
        if entry is not None and not entry.processed and entry.status != LEDGER_REFUNDED:
            entry.status = LEDGER_USER_NOT_FOUND
            entry.updated_at = now
            entry.merge_meta(unresolved_charge_id=event.charge_id)
            db.session.commit()
            return ReconciliationResult(Outcome.USER_NOT_FOUND, entry.id, None)
        return ReconciliationResult(Outcome.USER_NOT_FOUND, entry.id if entry else None, None)

    def _paid(self, event, entry, via, user, now) -> ReconciliationResult:
        if entry is None:
            entry, created = self._insert_entry(event, user, LEDGER_PENDING, now)
            if not created:
                user = db.session.get(User, user.id)
        elif via != VIA_CHARGE:
            if entry.processed:
                # mesma compra notificada por outro canal (ex.: sessão + fatura)
                current_app.logger.info("Cobrança %s já paga (entry=%s, via %s)",
                                        event.charge_id, entry.id, via)
                return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)
            self._adopt_charge_id(entry, event)

        if entry.processed:
            return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)
        if entry.status == LEDGER_REFUNDED:
            current_app.logger.warning("Pagamento %s/%s recebido após reembolso; ignorado",
                                       event.gateway, event.charge_id)
            return ReconciliationResult(Outcome.IGNORED, entry.id, user.id)

        plan = self._plan_for(event, entry)
        expires = plan_expiry(plan, now, self.settings.trial_days)

        claimed = db.session.execute(
            update(PaymentLedgerEntry)
            .where(PaymentLedgerEntry.id == entry.id,
                   PaymentLedgerEntry.processed.is_(False),
                   PaymentLedgerEntry.status != LEDGER_REFUNDED)
            .values(processed=True, subscription_activated=True, status=LEDGER_COMPLETED,
                    paid_at=now, updated_at=now, plan_type=plan)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            current_app.logger.info("Cobrança %s/%s já processada por outra requisição",
                                    event.gateway, event.charge_id)
            return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)

        entry.processed = True
        entry.subscription_activated = True
        entry.status = LEDGER_COMPLETED
        entry.paid_at = now
        entry.updated_at = now
        entry.plan_type = plan
        if event.amount_cents and not entry.amount:
            entry.amount = cents_to_decimal(event.amount_cents)
        if event.correlation_id and not entry.correlation_id:
            entry.correlation_id = event.correlation_id
        entry.merge_meta(raw_status=event.raw_status, simulated=event.simulated or None)

        user.subscription_active = True
        user.payment_required = False
        user.subscription_type = plan
        user.subscription_expires_at = expires
        if event.gateway == "stripe":
            if event.gateway_customer_id and not user.stripe_customer_id:
                user.stripe_customer_id = event.gateway_customer_id
            if event.provider_subscription_id:
                user.stripe_subscription_id = event.provider_subscription_id
        elif event.gateway == "mercadopago" and event.gateway_customer_id and not user.mercadopago_customer_id:
            user.mercadopago_customer_id = event.gateway_customer_id

        SubscriptionRecord.query.filter(
            SubscriptionRecord.user_id == user.id,
            SubscriptionRecord.status == SUB_ACTIVE,
        ).update({"status": SUB_EXPIRED, "updated_at": now}, synchronize_session=False)
        db.session.add(SubscriptionRecord(
            user_id=user.id,
            status=SUB_ACTIVE,
            plan_type=plan,
            gateway=event.gateway,
            ledger_entry_id=entry.id,
            provider_sub_id=event.provider_subscription_id,
            current_period_start=now,
            current_period_end=expires,
            created_at=now,
            updated_at=now,
        ))
        log_event(user.id, "payment_success", plan_type=plan, gateway=event.gateway,
                  charge_id=event.charge_id, expires_at=expires.isoformat())
        db.session.commit()

        return ReconciliationResult(
            Outcome.ACTIVATED, entry.id, user.id,
            notification_intents(user, CONFIRMED, plan_type=plan, expires_at=expires),
        )

    def _refunded(self, event, entry, user, now) -> ReconciliationResult:
        if entry is None:
            entry, created = self._insert_entry(event, user, LEDGER_PENDING, now)
            if not created:
                user = db.session.get(User, user.id)
            current_app.logger.warning("Reembolso de cobrança desconhecida %s/%s; entrada criada",
                                       event.gateway, event.charge_id)
        if entry.status == LEDGER_REFUNDED:
            return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)

        claimed = db.session.execute(
            update(PaymentLedgerEntry)
            .where(PaymentLedgerEntry.id == entry.id, PaymentLedgerEntry.status != LEDGER_REFUNDED)
            .values(status=LEDGER_REFUNDED, refunded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)

        entry.status = LEDGER_REFUNDED
        entry.refunded_at = now
        entry.updated_at = now
        entry.merge_meta(raw_status=event.raw_status)

        plan = user.subscription_type or entry.plan_type
        user.subscription_active = False
        user.subscription_type = None
        user.subscription_expires_at = None
        user.payment_required = True
        user.refunded_at = now

        SubscriptionRecord.query.filter(
            SubscriptionRecord.user_id == user.id,
            SubscriptionRecord.status.in_([SUB_ACTIVE, SUB_PENDING]),
        ).update({"status": SUB_CANCELED, "updated_at": now}, synchronize_session=False)
        log_event(user.id, "payment_refunded", plan_type=plan, gateway=event.gateway,
                  charge_id=event.charge_id)
        db.session.commit()

        return ReconciliationResult(
            Outcome.REFUNDED, entry.id, user.id,
            notification_intents(user, CANCELLED, plan_type=plan),
        )

    def _pending(self, event, entry, via, user, now) -> ReconciliationResult:
        if entry is None:
            entry, created = self._insert_entry(event, user, LEDGER_PENDING, now)
            if created:
                log_event(user.id, "payment_pending", plan_type=entry.plan_type, gateway=event.gateway,
                          charge_id=event.charge_id)
                db.session.commit()
            return ReconciliationResult(Outcome.PENDING_RECORDED, entry.id, user.id)
        if entry.processed:
            return ReconciliationResult(Outcome.DUPLICATE, entry.id, user.id)
        if via == VIA_CORRELATION:
            self._adopt_charge_id(entry, event)
            db.session.commit()
        return ReconciliationResult(Outcome.PENDING_RECORDED, entry.id, user.id)

    def _failed(self, event, entry, via, user, now) -> ReconciliationResult:
        expired = event.lifecycle == Lifecycle.EXPIRED
        status = LEDGER_EXPIRED if expired else LEDGER_REJECTED
        outcome = Outcome.EXPIRED if expired else Outcome.REJECTED

        if entry is None:
            entry, created = self._insert_entry(event, user, status, now)
            if not created:
                return self._failed(event, entry, VIA_CHARGE, db.session.get(User, user.id), now)
        else:
            if entry.processed or entry.status == LEDGER_REFUNDED:
                return ReconciliationResult(Outcome.IGNORED, entry.id, user.id)
            if via == VIA_CORRELATION:
                self._adopt_charge_id(entry, event)
            changed = db.session.execute(
                update(PaymentLedgerEntry)
                .where(PaymentLedgerEntry.id == entry.id, PaymentLedgerEntry.processed.is_(False),
                       PaymentLedgerEntry.status != LEDGER_REFUNDED)
                .values(status=status, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != 1:
                db.session.rollback()
                return ReconciliationResult(Outcome.IGNORED, entry.id, user.id)
            entry.status = status

        log_event(user.id, "payment_expired" if expired else "payment_failed",
                  plan_type=entry.plan_type, gateway=event.gateway, charge_id=event.charge_id,
                  raw_status=event.raw_status)
        db.session.commit()
        return ReconciliationResult(outcome, entry.id, user.id)


# ----------------------------------------------------------------------
# integração com o app (mesmo padrão de app.extensions dos outros serviços)
# ----------------------------------------------------------------------
def init_engine(app, dispatcher=None):
    settings = app.extensions.get("billing_settings") or BillingSettings.from_config(app.config)
    dispatcher = dispatcher if dispatcher is not None else app.extensions.get("notifications")
    app.extensions["reconciliation"] = ReconciliationEngine(settings, dispatcher)
    return app.extensions["reconciliation"]


def get_engine() -> ReconciliationEngine:
    eng = current_app.extensions.get("reconciliation")
    if eng is None:
        eng = init_engine(current_app)
    return eng
