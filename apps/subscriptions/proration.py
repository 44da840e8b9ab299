# subscriptions/proration.py

"""
Proration for mid-cycle plan changes.

Pure functions: no database, no provider. The unused part of the current
cycle becomes a credit at the old plan's daily rate; the new plan is
charged in full; the difference is the net amount.

    credit = round2(old_price / cycle_days * days_remaining)
    net    = new_price - credit
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from fees.schedule import iter_months, month_of
from utils.utils import add_months, round_to_currency, round_whole

AVERAGE_DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class ProrationResult:
    credit_amount: Decimal
    new_plan_charge: Decimal
    net_amount: Decimal
    days_used: int
    days_remaining: int
    total_days: int
    old_daily_rate: Decimal
    new_daily_rate: Decimal
    new_monthly_rate: int

    @property
    def amount_due_now(self):
        """What an upgrade bills immediately; never negative."""
        return max(self.net_amount, Decimal('0.00'))

    def as_dict(self):
        return {
            'creditAmount': str(self.credit_amount),
            'newPlanCharge': str(self.new_plan_charge),
            'netAmount': str(self.net_amount),
            'amountDueNow': str(self.amount_due_now),
            'daysUsed': self.days_used,
            'daysRemaining': self.days_remaining,
            'oldDailyRate': str(round_to_currency(self.old_daily_rate)),
            'newDailyRate': str(round_to_currency(self.new_daily_rate)),
            'newMonthlyRate': self.new_monthly_rate,
        }


def calculate_proration(current_price, current_duration, new_price, new_duration,
                        original_start, current_end, transition_date,
                        average_days_per_month=AVERAGE_DAYS_PER_MONTH):
    """
    Credit and charge for switching plans on `transition_date`.

    The current cycle length is the real span between `original_start` and
    `current_end`; if that span is empty the nominal
    `current_duration * average_days_per_month` is used instead.

    Example:
        A 900 / 3-month plan from 2025-01-01 to 2025-04-01 (90 days)
        switched on 2025-02-15 to a 300 / 1-month plan: 45 days remain,
        credit = 900 / 90 * 45 = 450.00, net = 300 - 450 = -150.00.
    """
    current_price = Decimal(str(current_price))
    new_price = Decimal(str(new_price))

    total_days = (current_end - original_start).days
    if total_days <= 0:
        total_days = int(current_duration) * average_days_per_month

    old_daily_rate = current_price / total_days
    days_used = max(0, (transition_date - original_start).days)
    days_remaining = min(total_days, max(0, (current_end - transition_date).days))

    credit_amount = round_to_currency(old_daily_rate * days_remaining)

    new_daily_rate = new_price / (int(new_duration) * average_days_per_month)
    new_monthly_rate = round_whole(new_daily_rate * average_days_per_month)

    new_plan_charge = round_to_currency(new_price)
    net_amount = new_plan_charge - credit_amount

    return ProrationResult(
        credit_amount=credit_amount,
        new_plan_charge=new_plan_charge,
        net_amount=net_amount,
        days_used=days_used,
        days_remaining=days_remaining,
        total_days=total_days,
        old_daily_rate=old_daily_rate,
        new_daily_rate=new_daily_rate,
        new_monthly_rate=new_monthly_rate,
    )


def new_cycle(transition_date, new_duration):
    """(start, end) of the cycle that begins on `transition_date`."""
    return transition_date, add_months(transition_date, int(new_duration))


def cycle_months(start, end):
    """
    `YYYY-MM` strings for every month the cycle touches.

    A cycle ending exactly on the 1st does not bill that month.
    """
    last_day = end if end.day != 1 else date.fromordinal(end.toordinal() - 1)
    if last_day < start:
        return [month_of(start)]
    return list(iter_months(month_of(start), month_of(last_day)))
