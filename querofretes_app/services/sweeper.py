# querofretes_app/services/sweeper.py
# -*- coding: utf-8 -*-
"""
Rotina periódica que desliga o acesso de quem passou do vencimento.

Roda no thread do APScheduler (com app context próprio) e também pelo CLI
``flask sweep-subscriptions`` ou pelo painel admin.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import and_, or_, update

from ..extensions import db
from ..models.subscription import SubscriptionRecord
from ..models.user import User
from .clock import utcnow
from .notifications import EXPIRED
from .plans import DRIVER_FREE
from .reconciliation import SUB_ACTIVE, SUB_EXPIRED, log_event, notification_intents


JOB_ID = "subscription_sweeper"


@dataclass
class SweepReport:
    scanned: int = 0
    expired: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"scanned": self.scanned, "expired": self.expired, "failed": self.failed}


def effective_expiry(user: User, trial_days: int) -> datetime | None:
    """Vencimento gravado; para registros antigos sem data, created_at + dias de teste."""
    if user.subscription_expires_at is not None:
        return user.subscription_expires_at
    if user.created_at is not None:
        return user.created_at + timedelta(days=trial_days)
    return None


def _deactivate(user_id: int, now: datetime, trial_days: int) -> bool:
    """UPDATE condicional: só desliga se o vencimento continuar no passado."""
    still_expired = or_(
        User.subscription_expires_at <= now,
        and_(User.subscription_expires_at.is_(None),
             User.created_at <= now - timedelta(days=trial_days)),
    )
    res = db.session.execute(
        update(User)
        .where(User.id == user_id,
               User.subscription_active.is_(True),
               or_(User.subscription_type.is_(None), User.subscription_type != DRIVER_FREE),
               still_expired)
        .values(subscription_active=False, payment_required=True)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def sweep_expired_entitlements(now: datetime | None = None, trial_days: int | None = None,
                               dispatcher=None) -> SweepReport:
    """Percorre usuários ativos (exceto driver_free) e expira os vencidos. Exige app context."""
    now = now or utcnow()
    settings = current_app.extensions.get("billing_settings")
    if trial_days is None:
        trial_days = settings.trial_days if settings else int(current_app.config.get("TRIAL_DAYS", 7))
    if dispatcher is None:
        dispatcher = current_app.extensions.get("notifications")

    report = SweepReport()
    user_ids = [
        uid for (uid,) in db.session.query(User.id).filter(
            User.subscription_active.is_(True),
            or_(User.subscription_type.is_(None), User.subscription_type != DRIVER_FREE),
        ).order_by(User.id).all()
    ]

    for uid in user_ids:
        report.scanned += 1
        try:
            user = db.session.get(User, uid)
            if user is None:
                continue
            expires = effective_expiry(user, trial_days)
            if expires is None or expires > now:
                continue
            if not _deactivate(uid, now, trial_days):
                db.session.rollback()
                continue

            SubscriptionRecord.query.filter(
                SubscriptionRecord.user_id == uid,
                SubscriptionRecord.status == SUB_ACTIVE,
            ).update({"status": SUB_EXPIRED, "updated_at": now}, synchronize_session=False)
            log_event(uid, "subscription_expired", plan_type=user.subscription_type,
                      expires_at=expires.isoformat())
            db.session.commit()
            report.expired += 1
        except Exception:
            db.session.rollback()
            report.failed += 1
            current_app.logger.exception("Falha ao expirar assinatura do usuário %s", uid)
            continue

        # expiração já gravada; erro no aviso só vai para o log
        try:
            db.session.refresh(user)
            intents = notification_intents(user, EXPIRED, plan_type=user.subscription_type, expires_at=expires)
            if dispatcher is not None:
                dispatcher.submit(intents)
        except Exception:
            current_app.logger.exception("Falha ao agendar aviso de expiração do usuário %s", uid)

    current_app.logger.info("Varredura de assinaturas: %d verificadas, %d expiradas, %d falhas",
                            report.scanned, report.expired, report.failed)
    return report


def _run_job(app):
    with app.app_context():
        try:
            sweep_expired_entitlements()
        finally:
            db.session.remove()


def schedule_sweeper(app, scheduler):
    hours = int(app.config.get("SWEEPER_INTERVAL_HOURS") or 6)
    kwargs = {}
    if app.config.get("SWEEPER_RUN_ON_STARTUP"):
        kwargs["next_run_time"] = datetime.now()
    scheduler.add_job(
        _run_job, "interval", hours=hours, args=[app],
        id=JOB_ID, replace_existing=True, coalesce=True, max_instances=1, **kwargs,
    )
    app.logger.info("Varredura de assinaturas agendada a cada %dh", hours)
