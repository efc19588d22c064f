"""Codec for the compact ``DD/MM/YY`` dates stored in the membership tables.

Two-digit years 00-30 map to 2000-2030 and 31-99 map to 1931-1999. The window
is kept for compatibility with the rows already in the store; a roster entry
meant for 2031 or later will parse as 1931+ and look long expired.
"""

from __future__ import annotations

from datetime import date, datetime, tzinfo
from typing import Optional

CENTURY_PIVOT = 30


def parse_ddmmyy(value: object) -> Optional[date]:
    if not value or not isinstance(value, str):
        return None
    parts = value.strip().split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
    except ValueError:
        return None
    if not (1 <= day <= 31 and 1 <= month <= 12 and 0 <= year <= 99):
        return None
    full_year = 2000 + year if year <= CENTURY_PIVOT else 1900 + year
    try:
        return date(full_year, month, day)
    except ValueError:
        # Calendar-invalid, e.g. 30/02/24
        return None


def format_ddmmyy(value: date) -> str:
    return f"{value.day:02d}/{value.month:02d}/{value.year % 100:02d}"


def today_in(tz: tzinfo | None = None) -> date:
    return datetime.now(tz).date()


def today_ddmmyy(tz: tzinfo | None = None) -> str:
    return format_ddmmyy(today_in(tz))


def is_today(value: str, today: date) -> bool:
    parsed = parse_ddmmyy(value)
    return parsed is not None and parsed == today


def to_iso(value: str) -> Optional[str]:
    parsed = parse_ddmmyy(value)
    return parsed.isoformat() if parsed else None
