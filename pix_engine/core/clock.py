"""
clock.py
--------
Utilidades de tiempo compartidas.

Toda fecha persistida es UTC. SQLite devuelve datetimes naive, por eso
as_utc() interpreta cualquier valor naive como UTC antes de comparar.
Las ventanas de calendario (día/mes, horario nocturno) se evalúan en
la zona local configurada.
"""

from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from pix_engine.core.config import settings

NIGHT_START_HOUR = 20
NIGHT_END_HOUR   = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache(maxsize=8)
def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_local(value: datetime, tz_name: str | None = None) -> datetime:
    return as_utc(value).astimezone(get_zone(tz_name or settings.LOCAL_TIMEZONE))


def local_day_start(value: datetime, tz_name: str | None = None) -> datetime:
    """Medianoche local del día de `value`, expresada en UTC."""
    local = to_local(value, tz_name)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def is_night_window(value: datetime, tz_name: str | None = None) -> bool:
    """Horario nocturno: hora local >= 20 o < 6."""
    hour = to_local(value, tz_name).hour
    return hour >= NIGHT_START_HOUR or hour < NIGHT_END_HOUR
