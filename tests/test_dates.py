from datetime import date
from zoneinfo import ZoneInfo

import pytest

from memberbot.dates import (
    format_ddmmyy,
    is_today,
    parse_ddmmyy,
    to_iso,
    today_ddmmyy,
)


def test_parse_and_format_roundtrip():
    parsed = parse_ddmmyy("14/03/25")
    assert parsed == date(2025, 3, 14)
    assert format_ddmmyy(parsed) == "14/03/25"


def test_format_zero_pads():
    assert format_ddmmyy(date(2024, 1, 5)) == "05/01/24"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("01/01/00", date(2000, 1, 1)),
        ("31/12/30", date(2030, 12, 31)),
        ("01/01/31", date(1931, 1, 1)),
        ("15/06/99", date(1999, 6, 15)),
    ],
)
def test_two_digit_year_window(text, expected):
    assert parse_ddmmyy(text) == expected


@pytest.mark.parametrize(
    "text",
    ["", None, "2025-03-14", "14/03", "aa/bb/cc", "32/01/25", "30/02/24", "14/13/25"],
)
def test_invalid_values_are_rejected(text):
    assert parse_ddmmyy(text) is None


def test_leap_day_only_in_leap_years():
    assert parse_ddmmyy("29/02/24") == date(2024, 2, 29)
    assert parse_ddmmyy("29/02/25") is None


def test_is_today_and_iso():
    today = date(2025, 3, 14)
    assert is_today("14/03/25", today)
    assert not is_today("13/03/25", today)
    assert not is_today("garbage", today)
    assert to_iso("14/03/25") == "2025-03-14"
    assert to_iso("nope") is None


def test_today_uses_timezone():
    text = today_ddmmyy(ZoneInfo("Australia/Melbourne"))
    assert parse_ddmmyy(text) is not None
