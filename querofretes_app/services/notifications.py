# querofretes_app/services/notifications.py
# -*- coding: utf-8 -*-
"""
Envio de e-mail/WhatsApp disparado pelas mudanças de assinatura.

As intenções (SideEffectIntent) saem do motor de conciliação e só são
entregues depois do commit. Cada uma tem uma única tentativa; falha de envio
vira log e nunca volta para quem chamou.
"""
from __future__ import annotations

import logging

import requests
from flask import current_app

from .events import SideEffectIntent
from .plans import PLAN_LABELS
from .settings import NotificationSettings

EMAIL = "email"
WHATSAPP = "whatsapp"

CONFIRMED = "subscription_confirmed"
CANCELLED = "subscription_cancelled"
EXPIRED = "subscription_expired"

_SUBJECTS = {
    CONFIRMED: "Confirmação de Assinatura - QUERO FRETES",
    CANCELLED: "Assinatura cancelada - Reembolso processado - QUERO FRETES",
    EXPIRED: "Sua assinatura expirou - QUERO FRETES",
}


def _fmt_date(value) -> str:
    if not value:
        return "—"
    if hasattr(value, "strftime"):
        return value.strftime("%d/%m/%Y")
    return str(value)


def render_text(template: str, context: dict, base_url: str = "") -> tuple[str, str]:
    """Retorna (assunto, corpo) em texto simples."""
    name = context.get("name") or "cliente"
    plan = PLAN_LABELS.get(context.get("plan_type"), context.get("plan_type") or "")
    link = f"{base_url}/subscribe" if base_url else ""

    if template == CONFIRMED:
        if context.get("plan_type") == "trial":
            subject = "Seu período de teste começou! - QUERO FRETES"
        else:
            subject = _SUBJECTS[CONFIRMED]
        body = (
            f"Olá {name},\n\n"
            f"Sua assinatura do plano {plan} está ativa até {_fmt_date(context.get('expires_at'))}.\n"
            "Obrigado por usar o QUERO FRETES!"
        )
    elif template == CANCELLED:
        subject = _SUBJECTS[CANCELLED]
        body = (
            f"Olá {name},\n\n"
            "Seu pagamento foi reembolsado e o acesso à plataforma foi encerrado.\n"
            f"Para reativar, escolha um plano em {link or 'nosso site'}."
        )
    elif template == EXPIRED:
        subject = _SUBJECTS[EXPIRED]
        body = (
            f"Olá {name},\n\n"
            f"Seu plano {plan} venceu em {_fmt_date(context.get('expires_at'))}.\n"
            f"Renove em {link or 'nosso site'} para continuar acessando os fretes."
        )
    else:
        raise ValueError(f"Template de notificação desconhecido: {template}")
    return subject, body


class NotificationDispatcher:
    def __init__(self, settings: NotificationSettings, scheduler=None, logger=None):
        self.settings = settings
        self.scheduler = scheduler
        # a entrega roda na thread do scheduler, sem app context: guarda o logger do app
        self.logger = logger or logging.getLogger("querofretes_app")

    # ---- entrega ----
    def send_email(self, intent: SideEffectIntent) -> bool:
        s = self.settings
        if not (s.email_api_url and s.email_api_key and s.email_from):
            self.logger.warning("E-mail não configurado; '%s' para %s não enviado", intent.template, intent.recipient)
            return False
        subject, body = render_text(intent.template, intent.context, s.public_base_url)
        r = requests.post(
            f"{s.email_api_url}/emails",
            headers={"Authorization": f"Bearer {s.email_api_key}"},
            json={"from": s.email_from, "to": [intent.recipient], "subject": subject, "text": body},
            timeout=s.timeout,
        )
        if r.status_code >= 400:
            self.logger.error("Falha ao enviar e-mail '%s' para %s: HTTP %s %s",
                              intent.template, intent.recipient, r.status_code, getattr(r, "text", ""))
            return False
        self.logger.info("E-mail '%s' enviado para %s", intent.template, intent.recipient)
        return True

    def send_whatsapp(self, intent: SideEffectIntent) -> bool:
        s = self.settings
        if not (s.whatsapp_enabled and s.whatsapp_webhook_url):
            return False
        _, body = render_text(intent.template, intent.context, s.public_base_url)
        r = requests.post(
            s.whatsapp_webhook_url,
            json={"phone": intent.recipient, "message": body, "template": intent.template},
            timeout=s.timeout,
        )
        if r.status_code >= 400:
            self.logger.error("Falha no WhatsApp '%s' para %s: HTTP %s", intent.template, intent.recipient, r.status_code)
            return False
        return True

    def deliver(self, intent: SideEffectIntent) -> bool:
        try:
            if intent.channel == EMAIL:
                return self.send_email(intent)
            if intent.channel == WHATSAPP:
                return self.send_whatsapp(intent)
            self.logger.warning("Canal de notificação desconhecido: %s", intent.channel)
            return False
        except (requests.RequestException, ValueError):
            self.logger.exception("Erro ao entregar notificação %s/%s para %s",
                                  intent.channel, intent.template, intent.recipient)
            return False

    def dispatch(self, intents) -> int:
        """Entrega na thread atual. Retorna quantas foram aceitas pelo provedor."""
        return sum(1 for intent in intents or () if self.deliver(intent))

    def submit(self, intents) -> None:
        """Agenda a entrega fora da requisição quando o scheduler está rodando."""
        intents = list(intents or ())
        if not intents:
            return
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.add_job(self.dispatch, args=[intents], misfire_grace_time=300)
        else:
            self.dispatch(intents)


def init_dispatcher(app, scheduler=None):
    settings = app.extensions.get("notification_settings") or NotificationSettings.from_config(app.config)
    app.extensions["notifications"] = NotificationDispatcher(settings, scheduler, app.logger)
    return app.extensions["notifications"]


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions["notifications"]
