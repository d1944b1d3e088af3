"""
Display formatting for rendered documents and outgoing mail.

Pure functions.  Amounts are shown with two decimals and thousands
separators, dates in the long ``January 5, 2026`` form.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

DEFAULT_CURRENCY_SYMBOL = "₱"
DATE_RANGE_SEPARATOR = " – "

_CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce a payload number (int, float, str, Decimal) to Decimal.

    Raises:
        ValueError: value is None, empty or not numeric.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).replace(",", "").strip())
        except InvalidOperation:
            raise ValueError(f"not a number: {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def format_currency(value: Any, symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    """Render an amount as ``<symbol>1,234.50``."""
    amount = to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)
    if amount < 0:
        return f"-{symbol}{-amount:,.2f}"
    return f"{symbol}{amount:,.2f}"


def parse_date(value: Any) -> date:
    """Accept a date, a datetime or an ISO-8601 string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return datetime.fromisoformat(text).date()
    raise ValueError(f"not a date: {value!r}")


def format_long_date(value: Any) -> str:
    """``2026-01-05`` -> ``January 5, 2026``. Empty values render as ``N/A``."""
    if value is None or value == "":
        return "N/A"
    d = parse_date(value)
    return f"{d:%B} {d.day}, {d.year}"


def format_date_range(start: Any, end: Any) -> str:
    """Human-readable contract period, e.g. ``January 1, 2026 – December 31, 2026``."""
    return f"{format_long_date(start)}{DATE_RANGE_SEPARATOR}{format_long_date(end)}"


def valid_until(issued_on: date, validity_days: int) -> date:
    return issued_on + timedelta(days=validity_days)


def contract_number_for(proposal_number: str | None) -> str:
    """Contract documents reuse the proposal sequence with a CONT prefix."""
    if not proposal_number:
        return "PENDING"
    return proposal_number.replace("PROP-", "CONT-", 1)
