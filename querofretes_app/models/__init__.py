# querofretes_app/models/__init__.py
# -*- coding: utf-8 -*-
from .user import User
from .payment import PaymentLedgerEntry
from .subscription import SubscriptionRecord, SubscriptionEvent


__all__ = [
    "User",
    "PaymentLedgerEntry",
    "SubscriptionRecord",
    "SubscriptionEvent",
]
