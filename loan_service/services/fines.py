"""Overdue fine arithmetic.

Pure functions of (due date, as-of date, daily rate); they never look at any
other loan field. Day counts are plain date differences, so a loan due on the
10th and checked on the 15th is five days overdue regardless of time of day.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

_CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def days_overdue(due_date: date, as_of: date) -> int:
    """Whole days *as_of* is past *due_date*; 0 when on time."""
    return max((as_of - due_date).days, 0)


def compute_fine(due_date: date, as_of: date, daily_rate: Decimal) -> Decimal:
    days = days_overdue(due_date, as_of)
    if days == 0:
        return ZERO
    return (Decimal(daily_rate) * days).quantize(_CENTS, rounding=ROUND_HALF_UP)
