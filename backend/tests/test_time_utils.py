"""Time helper tests: UTC dates and UK formatting."""

from datetime import date, datetime, timedelta, timezone

import pytest

from receipter.time_utils import format_uk_date, format_uk_datetime, parse_iso_date, to_utc_z, utc_today


def test_utc_today_of_naive_now_is_its_date():
    assert utc_today(datetime(2026, 1, 30, 23, 59)) == date(2026, 1, 30)


def test_utc_today_converts_aware_now_to_utc():
    # 01:30 on the 31st in UTC+02:00 is still the 30th in UTC
    east = datetime(2026, 1, 31, 1, 30, tzinfo=timezone(timedelta(hours=2)))
    assert utc_today(east) == date(2026, 1, 30)

    west = datetime(2026, 1, 30, 20, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert utc_today(west) == date(2026, 1, 31)


def test_parse_iso_date():
    assert parse_iso_date(" 2026-06-01 ") == date(2026, 6, 1)
    assert parse_iso_date("") is None
    assert parse_iso_date(None) is None
    with pytest.raises(ValueError):
        parse_iso_date("01/06/2026")


def test_uk_formats():
    assert format_uk_date(date(2026, 6, 1)) == "01/06/2026"
    assert format_uk_date(None) == ""
    assert format_uk_datetime(datetime(2026, 1, 30, 9, 5)) == "30/01/2026 09:05"
    assert to_utc_z(datetime(2026, 1, 30, 9, 5, 7, 123)) == "2026-01-30T09:05:07Z"
