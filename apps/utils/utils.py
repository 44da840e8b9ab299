# utils/utils.py

"""
Date and money helpers shared by the ledger apps.

Money rules:
- ledger rows hold whole currency units, rounded once, half away from zero
- deposits and provider amounts carry two decimals
"""

from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

WHOLE_UNIT = Decimal('1')
CENT = Decimal('0.01')


# =============================================================================
# TIME
# =============================================================================

def get_school_current_time():
    """Current time in the school's operational timezone (settings.TIME_ZONE)."""
    return timezone.localtime(timezone.now())


def get_school_today():
    """
    Today's date in the school's operational timezone.

    Use this instead of date.today() for anything that decides which month
    is "current".
    """
    return get_school_current_time().date()


def add_months(value, months):
    """Shift a date by whole months, clamping the day to the target month's length."""
    from calendar import monthrange

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return date(year, month, day)


# =============================================================================
# MONEY
# =============================================================================

def safe_decimal(value, default=None):
    """
    Convert value to Decimal, returning default when it is not a number.

    Floats go through str() so 0.1 stays 0.1.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        result = Decimal(str(value).strip())
    except (ValueError, TypeError, InvalidOperation):
        return default
    if not result.is_finite():
        return default
    return result


def round_whole(amount):
    """Round to a whole currency unit, half away from zero."""
    return int(Decimal(str(amount)).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP))


def round_to_currency(amount):
    """Round to two decimal places, half away from zero."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount):
    """Convert a two-decimal amount to integer cents for provider APIs."""
    return int((Decimal(str(amount)) * 100).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP))


def from_minor_units(cents):
    return round_to_currency(Decimal(int(cents or 0)) / 100)
