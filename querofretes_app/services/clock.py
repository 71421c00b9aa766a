# querofretes_app/services/clock.py
from __future__ import annotations
from datetime import datetime, timezone


def utcnow() -> datetime:
    # datetimes "naive" em UTC, como nas colunas do banco
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def parse_iso(value) -> datetime | None:
    """Converte ISO-8601 (com ou sem fuso) para UTC naive. Valores inválidos viram None."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
