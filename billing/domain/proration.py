"""Billing-anchor and proration arithmetic.

Pure functions, no I/O. Money is Decimal rounded half-up to cents.
A month is always 30 days for proration purposes.
"""

import calendar
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

DAYS_PER_MONTH = 30
CENT = Decimal("0.01")
_SECONDS_PER_DAY = Decimal(86400)


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_anchor(anchor_day: int, year: int, month: int) -> datetime:
    """
    The anchor day inside the given month, at 00:00 UTC.

    Days past the end of the month clamp to its last day
    (anchor 31 in April -> April 30, anchor 30 in February -> Feb 28/29).
    """
    if not 1 <= anchor_day <= 31:
        raise ValueError(f"anchor_day must be in 1..31, got {anchor_day}")
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(anchor_day, last_day), tzinfo=UTC)


def next_renewal(anchor_day: int, reference: datetime) -> datetime:
    """
    Next renewal date: the anchor day in the calendar month after ``reference``.

    >>> next_renewal(31, datetime(2025, 3, 31, tzinfo=UTC))
    datetime.datetime(2025, 4, 30, 0, 0, tzinfo=datetime.timezone.utc)
    """
    year, month = reference.year, reference.month + 1
    if month > 12:
        year, month = year + 1, 1
    return clamp_anchor(anchor_day, year, month)


def prorated_charge(monthly_price: Decimal, days_remaining: int) -> Decimal:
    """Charge for ``days_remaining`` of a 30-day month: round(P / 30 * N, 2)."""
    if days_remaining < 0:
        raise ValueError("days_remaining cannot be negative")
    return round_money(Decimal(monthly_price) * days_remaining / DAYS_PER_MONTH)


def prorated_resource_charge(unit_price: Decimal, quantity: int, days_remaining: int) -> Decimal:
    """Per-unit proration is rounded first, then multiplied by quantity."""
    return round_money(prorated_charge(unit_price, days_remaining) * quantity)


def days_between(start: datetime, end: datetime) -> int:
    """Absolute distance in days, rounded half-up to a whole day."""
    delta = abs(end - start)
    seconds = Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds) / 1_000_000
    return int((seconds / _SECONDS_PER_DAY).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def days_until(now: datetime, end: datetime) -> int:
    """Whole days from ``now`` to ``end``, zero once ``end`` has passed."""
    if end <= now:
        return 0
    return days_between(now, end)


def add_days(moment: datetime, days: int) -> datetime:
    return moment + timedelta(days=days)
