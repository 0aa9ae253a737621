from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from delivery_reminders.business_calendar import (
    business_day,
    day_offset,
    resolve_timezone,
    same_business_day,
    start_of_business_day,
)

DENVER = resolve_timezone("America/Denver")


def test_business_day_uses_local_calendar() -> None:
    # 03:00 UTC on the 10th is still the evening of the 9th in Denver.
    assert business_day(datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc), DENVER) == date(2026, 3, 9)
    assert business_day(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc), DENVER) == date(2026, 3, 10)


def test_naive_datetimes_are_read_as_utc() -> None:
    assert business_day(datetime(2026, 3, 10, 3, 0), DENVER) == date(2026, 3, 9)


def test_dates_pass_through_unchanged() -> None:
    assert business_day(date(2026, 3, 10), DENVER) == date(2026, 3, 10)


def test_day_offset_across_spring_forward_is_whole_days() -> None:
    # DST starts 2026-03-08 in Denver; the gap is 23 hours of wall time.
    now = datetime(2026, 3, 7, 23, 30, tzinfo=DENVER)
    assert day_offset(date(2026, 3, 9), now, DENVER) == 2


def test_day_offset_across_fall_back_is_whole_days() -> None:
    # DST ends 2026-11-01 in Denver.
    now = datetime(2026, 10, 31, 23, 30, tzinfo=DENVER)
    assert day_offset(date(2026, 11, 2), now, DENVER) == 2
    assert day_offset(date(2026, 12, 12), now, DENVER) == 42


def test_day_offset_none_without_date() -> None:
    assert day_offset(None, datetime(2026, 3, 7, tzinfo=timezone.utc), DENVER) is None


def test_day_offset_negative_for_past_dates() -> None:
    now = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)
    assert day_offset(date(2026, 3, 8), now, DENVER) == -2


def test_start_of_business_day_is_local_midnight_in_utc() -> None:
    winter = start_of_business_day(datetime(2026, 1, 15, 18, 0, tzinfo=timezone.utc), DENVER)
    summer = start_of_business_day(datetime(2026, 7, 15, 18, 0, tzinfo=timezone.utc), DENVER)

    assert winter == datetime(2026, 1, 15, 7, 0, tzinfo=timezone.utc)
    assert summer == datetime(2026, 7, 15, 6, 0, tzinfo=timezone.utc)
    assert summer.tzinfo == timezone.utc


def test_same_business_day() -> None:
    evening = datetime(2026, 7, 15, 4, 0, tzinfo=timezone.utc)
    earlier = evening - timedelta(hours=8)
    next_morning = evening + timedelta(hours=10)

    assert same_business_day(earlier, evening, DENVER) is True
    assert same_business_day(evening, next_morning, DENVER) is False
    assert same_business_day(None, evening, DENVER) is False


def test_resolve_timezone_rejects_unknown_zone() -> None:
    with pytest.raises(ValueError, match="unknown business timezone"):
        resolve_timezone("Mars/Olympus_Mons")
