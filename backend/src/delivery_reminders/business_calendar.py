"""Business-timezone calendar arithmetic.

Every comparison the phase runners make is done on local calendar days in a
single business timezone, never on UTC instants. Each operand is converted to
its own local date before subtracting, so a DST transition between the two
instants cannot turn the difference into a fractional day.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_BUSINESS_TIMEZONE = "America/Denver"


@lru_cache(maxsize=16)
def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name.strip() or DEFAULT_BUSINESS_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown business timezone: {name}") from exc


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_day(value: date | datetime, tz: ZoneInfo) -> date:
    """Local calendar day of ``value``.

    Plain dates are already calendar days. Naive datetimes are read as UTC.
    """
    if isinstance(value, datetime):
        return _coerce_utc(value).astimezone(tz).date()
    return value


def start_of_business_day(value: date | datetime, tz: ZoneInfo) -> datetime:
    """UTC instant of local midnight on the business day containing ``value``."""
    local_midnight = datetime.combine(business_day(value, tz), time.min, tzinfo=tz)
    return local_midnight.astimezone(timezone.utc)


def day_offset(delivery_date: date | datetime | None, now: datetime, tz: ZoneInfo) -> int | None:
    if delivery_date is None:
        return None
    return (business_day(delivery_date, tz) - business_day(now, tz)).days


def same_business_day(first: datetime | None, second: datetime, tz: ZoneInfo) -> bool:
    if first is None:
        return False
    return business_day(first, tz) == business_day(second, tz)
