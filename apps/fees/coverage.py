# fees/coverage.py

"""
Month coverage: is a student-month fully accounted for?

A month is covered when any of these hold, checked in this order:
1. a row has status paid (unconditional, so a later fee change never
   reopens a settled month)
2. a row is of type free
3. a prize-partial row and a full or partial row are both present
4. the summed amount of non-rejected rows reaches the expected amount

Rejected rows are ignored entirely.
"""

from dataclasses import dataclass
from enum import Enum

from fees.models import PaymentStatus, PaymentType


class CoverageBasis(str, Enum):
    PAID_STATUS = 'paid_status'
    FREE_MONTH = 'free_month'
    PRIZE_COMBINATION = 'prize_combination'
    AMOUNT = 'amount'
    UNCOVERED = 'uncovered'


# Which row types pair with a prize-partial award to close a month
_PRIZE_COMPLEMENTS = {
    PaymentType.FULL: True,
    PaymentType.PARTIAL: True,
    PaymentType.PRIZE_PARTIAL: False,
    PaymentType.FREE: False,
}


@dataclass(frozen=True)
class MonthCoverage:
    month: str
    expected: int
    paid_total: int
    basis: CoverageBasis

    @property
    def covered(self):
        return self.basis != CoverageBasis.UNCOVERED

    @property
    def shortfall(self):
        if self.covered:
            return 0
        return max(self.expected - self.paid_total, 0)

    def as_dict(self):
        return {
            'month': self.month,
            'expected': self.expected,
            'paid': self.paid_total,
            'shortfall': self.shortfall,
        }


def paid_total(rows):
    """Sum of paid_amount over non-rejected rows."""
    return sum(row.paid_amount for row in rows if PaymentStatus(row.status) != PaymentStatus.REJECTED)


def evaluate_month_coverage(month, rows, expected):
    """
    Decide coverage for one student-month.

    Args:
        month (str): `YYYY-MM`.
        rows (iterable): MonthlyPayment rows for that student and month.
        expected (int): Expected amount from the fee schedule.

    Returns:
        MonthCoverage
    """
    live_rows = [row for row in rows if PaymentStatus(row.status) != PaymentStatus.REJECTED]
    total = paid_total(live_rows)
    types = {PaymentType.parse(row.payment_type) for row in live_rows}

    if any(PaymentStatus(row.status) == PaymentStatus.PAID for row in live_rows):
        basis = CoverageBasis.PAID_STATUS
    elif PaymentType.FREE in types:
        basis = CoverageBasis.FREE_MONTH
    elif PaymentType.PRIZE_PARTIAL in types and any(_PRIZE_COMPLEMENTS[t] for t in types):
        basis = CoverageBasis.PRIZE_COMBINATION
    elif total >= expected:
        basis = CoverageBasis.AMOUNT
    else:
        basis = CoverageBasis.UNCOVERED

    return MonthCoverage(month=month, expected=expected, paid_total=total, basis=basis)
