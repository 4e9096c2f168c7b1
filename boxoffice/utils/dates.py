"""Datetime helpers."""

from __future__ import annotations

import os
import re
from datetime import date, datetime, timezone

import pendulum

DEFAULT_TZ = "America/Chicago"

_US_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_ISO_DATE_RE = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})")
_DASH_DATE_RE = re.compile(r"(\d{1,2})-(\d{1,2})-(\d{4})")


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utc_now() -> datetime:
    # plain datetime; DB drivers adapt exact types only
    return datetime.now(timezone.utc)


def parse_iso_date(value: str) -> date:
    return _plain_date(pendulum.parse(value))


def local_date(value: datetime) -> date:
    """Calendar date of ``value`` in the configured timezone."""
    return _plain_date(pendulum.instance(value).in_timezone(timezone_name()))


def parse_report_date(value: str | None) -> date | None:
    """Find the first ``M/D/YYYY``, ``YYYY-MM-DD`` or ``M-D-YYYY`` date in ``value``."""
    if not value:
        return None
    match = _US_DATE_RE.search(value)
    if match:
        month, day, year = match.groups()
        return _safe_date(year, month, day)
    match = _ISO_DATE_RE.search(value)
    if match:
        year, month, day = match.groups()
        return _safe_date(year, month, day)
    match = _DASH_DATE_RE.search(value)
    if match:
        month, day, year = match.groups()
        return _safe_date(year, month, day)
    return None


def as_date(value: date | str | None) -> date | None:
    # SQLite hands DATE columns back as ISO strings through text() queries
    if value is None:
        return None
    if isinstance(value, datetime):
        return _plain_date(value)
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def as_datetime(value: datetime | str | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = pendulum.parse(str(value))
    return datetime.fromtimestamp(parsed.timestamp(), timezone.utc)


def _plain_date(value: date) -> date:
    return date(value.year, value.month, value.day)


def _safe_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None
