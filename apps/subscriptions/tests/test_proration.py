from datetime import date
from decimal import Decimal

from django.test import SimpleTestCase

from subscriptions.proration import calculate_proration, cycle_months, new_cycle


class CalculateProrationTest(SimpleTestCase):

    def test_downgrade_mid_cycle(self):
        # 900 over Jan-Mar (90 days), switched on Feb 15 with 45 days left
        result = calculate_proration(
            900, 3, 300, 1, date(2025, 1, 1), date(2025, 4, 1), date(2025, 2, 15)
        )
        self.assertEqual(result.total_days, 90)
        self.assertEqual(result.days_used, 45)
        self.assertEqual(result.days_remaining, 45)
        self.assertEqual(result.credit_amount, Decimal('450.00'))
        self.assertEqual(result.new_plan_charge, Decimal('300.00'))
        self.assertEqual(result.net_amount, Decimal('-150.00'))
        self.assertEqual(result.new_monthly_rate, 300)
        self.assertEqual(result.amount_due_now, Decimal('0.00'))

    def test_net_is_charge_minus_credit(self):
        cases = [
            (Decimal('1200'), 6, Decimal('250'), 1, date(2025, 1, 10), date(2025, 7, 10), date(2025, 3, 3)),
            (Decimal('299.99'), 1, Decimal('149.50'), 1, date(2025, 2, 1), date(2025, 3, 1), date(2025, 2, 28)),
            (Decimal('500'), 2, Decimal('100'), 1, date(2025, 5, 31), date(2025, 7, 31), date(2025, 6, 1)),
        ]
        for current_price, current_duration, new_price, new_duration, start, end, switch in cases:
            with self.subTest(start=start, switch=switch):
                result = calculate_proration(current_price, current_duration, new_price, new_duration,
                                             start, end, switch)
                self.assertEqual(result.credit_amount + (result.new_plan_charge - result.net_amount),
                                 result.new_plan_charge)
                self.assertEqual(result.credit_amount, result.credit_amount.quantize(Decimal('0.01')))

    def test_upgrade_charges_difference(self):
        result = calculate_proration(300, 1, 900, 3, date(2025, 1, 1), date(2025, 1, 31), date(2025, 1, 16))
        self.assertEqual(result.total_days, 30)
        self.assertEqual(result.credit_amount, Decimal('150.00'))
        self.assertEqual(result.net_amount, Decimal('750.00'))
        self.assertEqual(result.amount_due_now, Decimal('750.00'))

    def test_remaining_days_never_exceed_the_cycle(self):
        result = calculate_proration(900, 3, 300, 1, date(2025, 1, 1), date(2025, 4, 1), date(2024, 12, 1))
        self.assertEqual(result.days_remaining, 90)
        self.assertEqual(result.days_used, 0)
        self.assertEqual(result.credit_amount, Decimal('900.00'))

    def test_switch_after_cycle_end_gives_no_credit(self):
        result = calculate_proration(900, 3, 300, 1, date(2025, 1, 1), date(2025, 4, 1), date(2025, 4, 10))
        self.assertEqual(result.days_remaining, 0)
        self.assertEqual(result.credit_amount, Decimal('0.00'))

    def test_empty_cycle_falls_back_to_nominal_length(self):
        result = calculate_proration(900, 3, 300, 1, date(2025, 1, 1), date(2025, 1, 1), date(2025, 1, 1))
        self.assertEqual(result.total_days, 90)


class CycleTest(SimpleTestCase):

    def test_new_cycle_clamps_to_month_end(self):
        self.assertEqual(new_cycle(date(2025, 1, 31), 1), (date(2025, 1, 31), date(2025, 2, 28)))

    def test_cycle_months(self):
        self.assertEqual(cycle_months(date(2025, 2, 15), date(2025, 3, 15)), ['2025-02', '2025-03'])
        self.assertEqual(cycle_months(date(2025, 1, 1), date(2025, 4, 1)), ['2025-01', '2025-02', '2025-03'])
        self.assertEqual(cycle_months(date(2025, 12, 10), date(2026, 1, 10)), ['2025-12', '2026-01'])
