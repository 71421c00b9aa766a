# querofretes_app/services/errors.py
# -*- coding: utf-8 -*-
from __future__ import annotations


class PaymentError(Exception):
    """Base para erros do fluxo de pagamentos."""

    status_code = 500

    def __init__(self, message: str, *, gateway: str | None = None):
        super().__init__(message)
        self.message = message
        self.gateway = gateway


class MalformedPayload(PaymentError):
    """Payload do gateway sem os campos mínimos. Responde 400, nada é gravado."""

    status_code = 400


class GatewayUnavailable(PaymentError):
    """Falha/timeout ao consultar o gateway. Responde 500 para o gateway reenviar."""

    status_code = 500


class GatewayNotConfigured(PaymentError):
    status_code = 500


class InvalidCorrelationToken(PaymentError):
    """Token de correlação com assinatura inválida ou vencido."""

    status_code = 400


class TrialNotAllowed(PaymentError):
    """Usuário já teve assinatura (ou teste) e não pode iniciar outro teste."""

    status_code = 400
