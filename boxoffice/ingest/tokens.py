"""Shape predicates and converters for report text tokens."""

from __future__ import annotations

import re

INTEGER_RE = re.compile(r"^\d+$")
CURRENCY_RE = re.compile(r"^\d{1,3}(,\d{3})*\.\d{2}$")
PERCENT_RE = re.compile(r"^\d+(\.\d+)?%$")
_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?")


def is_integer(token: str | None) -> bool:
    return bool(token) and INTEGER_RE.match(token.strip()) is not None


def is_currency(token: str | None) -> bool:
    return bool(token) and CURRENCY_RE.match(token.strip()) is not None


def is_percentage(token: str | None) -> bool:
    return bool(token) and PERCENT_RE.match(token.strip()) is not None


def to_int(token: str | None) -> int:
    """``"1,204"`` -> ``1204``; anything unreadable is zero."""
    if not token:
        return 0
    match = _NUMBER_RE.search(token.replace(",", ""))
    if not match:
        return 0
    return int(float(match.group(0)))


def to_cents(token: str | None) -> int:
    """``"12,345.60"`` -> ``1234560``."""
    if not token:
        return 0
    cleaned = token.replace(",", "").replace("$", "").strip()
    match = _NUMBER_RE.search(cleaned)
    if not match:
        return 0
    return round(float(match.group(0)) * 100)


def to_percent(token: str | None) -> float:
    if not token:
        return 0.0
    match = _NUMBER_RE.search(token.replace(",", ""))
    if not match:
        return 0.0
    return float(match.group(0))
