"""Tests for time utilities"""
from datetime import date, datetime, timedelta, timezone

import pytest

from smartforms.utils.time import (
    add_hours, age_in_years, ensure_utc, format_iso, hours_between, parse_iso, to_datetime,
)

RIYADH = timezone(timedelta(hours=3))


def test_format_iso_uses_z_suffix():
    assert format_iso(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)) == "2025-01-15T12:00:00Z"
    assert format_iso(datetime(2025, 1, 15, 15, 0, tzinfo=RIYADH)) == "2025-01-15T12:00:00Z"


def test_ensure_utc():
    assert ensure_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc
    assert ensure_utc(datetime(2025, 1, 1, 3, tzinfo=RIYADH)).hour == 0


def test_parse_iso():
    assert parse_iso("2025-01-15T12:00:00Z") == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
    assert parse_iso("2025-01-15") == datetime(2025, 1, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("value,expected", [
    (date(2025, 3, 1), datetime(2025, 3, 1, tzinfo=timezone.utc)),
    ("2025-03-01T08:30:00+00:00", datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)),
    ("March 1, 2025", datetime(2025, 3, 1, tzinfo=timezone.utc)),
    ("", None),
    (None, None),
    ("not a date", None),
    (42, None),
])
def test_to_datetime(value, expected):
    assert to_datetime(value) == expected


def test_hour_arithmetic():
    start = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
    assert add_hours(start, 1.5) == start + timedelta(minutes=90)
    assert hours_between(start, start + timedelta(hours=25)) == 25.0
    assert hours_between(start + timedelta(hours=2), start) == -2.0


def test_age_in_years():
    today = datetime(2025, 6, 15)
    assert age_in_years(datetime(2007, 6, 15), today) == 18
    assert age_in_years(datetime(2007, 6, 16), today) == 17
