# querofretes_app/services/settings.py
# -*- coding: utf-8 -*-
"""Configuração de cobrança/notificação congelada na inicialização do app."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app


@dataclass(frozen=True)
class NotificationSettings:
    email_api_url: str = ""
    email_api_key: str = ""
    email_from: str = ""
    whatsapp_webhook_url: str = ""
    whatsapp_enabled: bool = False
    timeout: float = 10.0
    public_base_url: str = ""

    @classmethod
    def from_config(cls, cfg) -> "NotificationSettings":
        return cls(
            email_api_url=(cfg.get("EMAIL_API_URL") or "").rstrip("/"),
            email_api_key=cfg.get("EMAIL_API_KEY") or "",
            email_from=cfg.get("EMAIL_FROM") or "",
            whatsapp_webhook_url=cfg.get("WHATSAPP_WEBHOOK_URL") or "",
            whatsapp_enabled=bool(cfg.get("WHATSAPP_ENABLED")),
            timeout=float(cfg.get("NOTIFICATION_TIMEOUT") or 10),
            public_base_url=(cfg.get("PUBLIC_BASE_URL") or "").rstrip("/"),
        )


@dataclass(frozen=True)
class BillingSettings:
    correlation_prefix: str = "querofretes"
    token_secret: str = ""
    token_ttl: timedelta = timedelta(minutes=60)
    monthly_price_cents: int = 9990
    annual_price_cents: int = 96000
    trial_days: int = 7
    gateway_timeout: float = 5.0
    webhook_timeout: float = 15.0
    public_base_url: str = ""
    simulation_enabled: bool = False

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_monthly_id: str = ""
    stripe_price_annual_id: str = ""
    stripe_success_url: str = ""
    stripe_cancel_url: str = ""

    mercadopago_access_token: str = ""
    mercadopago_api_url: str = "https://api.mercadopago.com"

    openpix_app_id: str = ""
    openpix_api_url: str = "https://api.openpix.com.br/api/v1"
    openpix_webhook_secret: str = ""

    @classmethod
    def from_config(cls, cfg) -> "BillingSettings":
        return cls(
            correlation_prefix=cfg.get("CORRELATION_PREFIX") or "querofretes",
            token_secret=cfg.get("PAYMENT_TOKEN_SECRET") or cfg.get("SECRET_KEY") or "",
            token_ttl=timedelta(minutes=int(cfg.get("PAYMENT_TOKEN_TTL_MINUTES") or 60)),
            monthly_price_cents=int(cfg.get("PLAN_MONTHLY_CENTS") or 9990),
            annual_price_cents=int(cfg.get("PLAN_ANNUAL_CENTS") or 96000),
            trial_days=int(cfg.get("TRIAL_DAYS") or 7),
            gateway_timeout=float(cfg.get("GATEWAY_HTTP_TIMEOUT") or 5),
            webhook_timeout=float(cfg.get("WEBHOOK_TIMEOUT") or 15),
            public_base_url=(cfg.get("PUBLIC_BASE_URL") or "").rstrip("/"),
            simulation_enabled=bool(cfg.get("ENABLE_PAYMENT_SIMULATION")),
            stripe_secret_key=cfg.get("STRIPE_SECRET_KEY") or "",
            stripe_webhook_secret=cfg.get("STRIPE_WEBHOOK_SECRET") or "",
            stripe_price_monthly_id=cfg.get("STRIPE_PRICE_MONTHLY_ID") or "",
            stripe_price_annual_id=cfg.get("STRIPE_PRICE_ANNUAL_ID") or "",
            stripe_success_url=cfg.get("STRIPE_SUCCESS_URL") or "",
            stripe_cancel_url=cfg.get("STRIPE_CANCEL_URL") or "",
            mercadopago_access_token=cfg.get("MERCADOPAGO_ACCESS_TOKEN") or "",
            mercadopago_api_url=(cfg.get("MERCADOPAGO_API_URL") or "https://api.mercadopago.com").rstrip("/"),
            openpix_app_id=cfg.get("OPENPIX_APP_ID") or "",
            openpix_api_url=(cfg.get("OPENPIX_API_URL") or "https://api.openpix.com.br/api/v1").rstrip("/"),
            openpix_webhook_secret=cfg.get("OPENPIX_WEBHOOK_SECRET") or "",
        )


def init_settings(app) -> None:
    app.extensions["billing_settings"] = BillingSettings.from_config(app.config)
    app.extensions["notification_settings"] = NotificationSettings.from_config(app.config)


def get_billing_settings() -> BillingSettings:
    return current_app.extensions["billing_settings"]


def get_notification_settings() -> NotificationSettings:
    return current_app.extensions["notification_settings"]
