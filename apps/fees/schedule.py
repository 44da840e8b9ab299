# fees/schedule.py

"""
Fee schedule: how much tuition is expected for a student in a given month.

Months are `YYYY-MM` strings everywhere in the ledger. The enrollment month
is prorated by the days the student actually spends in class; every later
month costs the full base fee; months before enrollment cost nothing.
"""

import re
from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from fees.exceptions import ValidationError
from utils.utils import round_whole

MONTH_PATTERN = re.compile(r'^(\d{4})-(\d{1,2})$')


@dataclass(frozen=True)
class FeeProfile:
    student_id: object
    base_monthly_fee: Decimal
    currency: str
    enrollment_start_date: date

    @property
    def enrollment_month(self):
        return month_of(self.enrollment_start_date)


# =============================================================================
# MONTH STRINGS
# =============================================================================

def normalize_month(value):
    """
    Return `value` as a canonical `YYYY-MM` string.

    Accepts single-digit months ("2025-3"). Raises ValidationError for
    anything else, including month numbers outside 1-12.
    """
    match = MONTH_PATTERN.match(str(value or '').strip())
    if not match:
        raise ValidationError("Invalid month format. Use YYYY-MM.", month=value)

    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 01 and 12.", month=value)
    return f"{year:04d}-{month:02d}"


def month_of(value):
    return f"{value.year:04d}-{value.month:02d}"


def parse_month(month):
    """`YYYY-MM` -> (year, month)."""
    year, number = normalize_month(month).split('-')
    return int(year), int(number)


def month_start(month):
    year, number = parse_month(month)
    return date(year, number, 1)


def month_end(month):
    year, number = parse_month(month)
    return date(year, number, monthrange(year, number)[1])


def next_month(month):
    year, number = parse_month(month)
    if number == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{number + 1:02d}"


def iter_months(start, end):
    """Yield every month from `start` to `end`, both inclusive."""
    current = normalize_month(start)
    end = normalize_month(end)
    while current <= end:
        yield current
        current = next_month(current)


def months_before(start, target):
    """Months from `start` (inclusive) up to `target` (exclusive)."""
    target = normalize_month(target)
    return [m for m in iter_months(start, target) if m != target]


# =============================================================================
# EXPECTED AMOUNT
# =============================================================================

def expected_amount(profile, month):
    """
    Expected whole-unit tuition for `month`.

    Example:
        Enrolled 2025-06-21 with a 300 fee: June has 30 days, the student
        is in class for 10 of them, so June's expected amount is 100.
    """
    month = normalize_month(month)
    enrollment_month = profile.enrollment_month

    if month < enrollment_month:
        return 0

    fee = Decimal(str(profile.base_monthly_fee))

    if month == enrollment_month:
        last_day = month_end(month)
        days_in_month = last_day.day
        days_in_class = min(days_in_month, (last_day - profile.enrollment_start_date).days + 1)
        return round_whole(fee * days_in_class / days_in_month)

    return round_whole(fee)


def coverage_window(profile, month):
    """
    (coverage_start, coverage_end) for a ledger row in `month`.

    The enrollment month starts on the enrollment date, not the 1st.
    """
    month = normalize_month(month)
    start = month_start(month)
    if month == profile.enrollment_month:
        start = profile.enrollment_start_date
    return start, month_end(month)
