# querofretes_app/services/gateways/__init__.py
# -*- coding: utf-8 -*-
"""
Adaptadores de gateway: traduzem o payload nativo em NormalizedPaymentEvent.

Nenhum adaptador escreve no banco; só o motor de conciliação escreve.
"""
from .base import Deadline, resolve_user_id
from .stripe_gateway import StripeGateway
from .mercadopago import MercadoPagoGateway
from .openpix import OpenPixGateway

STRIPE = "stripe"
MERCADOPAGO = "mercadopago"
OPENPIX = "openpix"

__all__ = [
    "Deadline",
    "resolve_user_id",
    "StripeGateway",
    "MercadoPagoGateway",
    "OpenPixGateway",
    "STRIPE",
    "MERCADOPAGO",
    "OPENPIX",
]
