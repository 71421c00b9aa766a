# querofretes_app/services/correlation.py
# -*- coding: utf-8 -*-
"""
Tokens de correlação gravados na cobrança do gateway para, na notificação,
chegar de volta ao usuário/plano.

Dois formatos:
  * referência delimitada ``<prefixo>-<userId>-<epochMillis>`` (Stripe
    client_reference_id, OpenPix correlationID);
  * token assinado (JWT HS256) com ``sub``, ``plan``, ``iat`` e ``exp``
    (external_reference do Mercado Pago).

Também lê o JSON ``{"userId": .., "planType": ..}`` que o checkout antigo do
Mercado Pago gravava em external_reference.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from .clock import utcnow
from .errors import InvalidCorrelationToken
from .plans import normalize_plan_type

ALGORITHM = "HS256"
KIND_REFERENCE = "reference"
KIND_SIGNED = "signed"
KIND_LEGACY = "legacy_json"


@dataclass(frozen=True)
class CorrelationToken:
    user_id: int
    plan_type: str | None
    issued_at: datetime | None
    raw: str
    kind: str

    @property
    def single_issuance(self) -> bool:
        """Referência e token assinado nascem por cobrança; o JSON antigo se repete a cada compra."""
        return self.kind in (KIND_REFERENCE, KIND_SIGNED)


def _epoch_ms(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)


def new_reference(user_id: int, prefix: str = "querofretes", now: datetime | None = None) -> str:
    return f"{prefix}-{int(user_id)}-{_epoch_ms(now or utcnow())}"


def parse_reference(value: str | None, prefix: str = "querofretes") -> CorrelationToken | None:
    if not value:
        return None
    m = re.fullmatch(rf"{re.escape(prefix)}-(\d+)-(\d+)", str(value).strip())
    if not m:
        return None
    issued = datetime.fromtimestamp(int(m.group(2)) / 1000, tz=timezone.utc).replace(tzinfo=None)
    return CorrelationToken(int(m.group(1)), None, issued, str(value).strip(), KIND_REFERENCE)


def sign_token(user_id: int, plan_type: str, secret: str, ttl: timedelta,
               now: datetime | None = None) -> str:
    now = now or utcnow()
    payload = {
        "sub": str(int(user_id)),
        "plan": plan_type,
        "iat": _epoch_ms(now) // 1000,
        "exp": _epoch_ms(now + ttl) // 1000,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str, at: datetime | None = None) -> CorrelationToken:
    """
    Valida assinatura e validade do token.

    ``at`` é o instante em que a cobrança foi criada no gateway: um pagamento
    iniciado dentro da janela do token continua válido mesmo que a notificação
    chegue (ou seja reenviada) depois do ``exp``.
    """
    try:
        claims = jwt.decode(
            token, secret, algorithms=[ALGORITHM],
            options={"verify_exp": False, "require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        raise InvalidCorrelationToken(f"token inválido: {e}")

    moment = at or utcnow()
    expires = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc).replace(tzinfo=None)
    if moment > expires:
        raise InvalidCorrelationToken("token expirado")
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise InvalidCorrelationToken("token sem usuário")

    issued = None
    if claims.get("iat") is not None:
        issued = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc).replace(tzinfo=None)
    return CorrelationToken(user_id, normalize_plan_type(claims.get("plan")), issued, token, KIND_SIGNED)


def _parse_legacy_json(value: str) -> CorrelationToken | None:
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("userId") in (None, ""):
        return None
    try:
        user_id = int(data["userId"])
    except (TypeError, ValueError):
        return None
    return CorrelationToken(user_id, normalize_plan_type(data.get("planType")), None, value, KIND_LEGACY)


def decode_correlation(value: str | None, secret: str, prefix: str = "querofretes",
                       at: datetime | None = None) -> CorrelationToken | None:
    """Tenta todos os formatos conhecidos. Formato estranho/assinatura ruim -> None."""
    if not value:
        return None
    value = str(value).strip()
    token = parse_reference(value, prefix)
    if token:
        return token
    if value.startswith("{"):
        return _parse_legacy_json(value)
    if value.count(".") == 2:
        try:
            return verify_token(value, secret, at=at)
        except InvalidCorrelationToken:
            return None
    return None
