from types import SimpleNamespace

from django.test import SimpleTestCase

from fees.coverage import CoverageBasis, evaluate_month_coverage, paid_total


def row(amount, payment_type='partial', status='pending'):
    return SimpleNamespace(paid_amount=amount, payment_type=payment_type, status=status)


class MonthCoverageTest(SimpleTestCase):

    def test_paid_status_covers_regardless_of_amount(self):
        coverage = evaluate_month_coverage('2025-01', [row(250, 'full', 'paid')], 300)
        self.assertTrue(coverage.covered)
        self.assertEqual(coverage.basis, CoverageBasis.PAID_STATUS)
        self.assertEqual(coverage.shortfall, 0)

    def test_free_row_covers(self):
        coverage = evaluate_month_coverage('2025-01', [row(0, 'free')], 300)
        self.assertEqual(coverage.basis, CoverageBasis.FREE_MONTH)

    def test_legacy_prize_row_counts_as_free(self):
        coverage = evaluate_month_coverage('2025-01', [row(0, 'prize')], 300)
        self.assertEqual(coverage.basis, CoverageBasis.FREE_MONTH)

    def test_prize_partial_with_partial_covers(self):
        rows = [row(100, 'prizepartial'), row(50, 'partial')]
        coverage = evaluate_month_coverage('2025-01', rows, 300)
        self.assertEqual(coverage.basis, CoverageBasis.PRIZE_COMBINATION)

    def test_prize_partial_alone_is_short(self):
        coverage = evaluate_month_coverage('2025-01', [row(100, 'prizepartial')], 300)
        self.assertFalse(coverage.covered)
        self.assertEqual(coverage.shortfall, 200)

    def test_pending_rows_reaching_expected_cover(self):
        coverage = evaluate_month_coverage('2025-01', [row(200), row(100)], 300)
        self.assertEqual(coverage.basis, CoverageBasis.AMOUNT)

    def test_rejected_rows_are_ignored(self):
        rows = [row(300, 'full', 'rejected'), row(100)]
        self.assertEqual(paid_total(rows), 100)
        coverage = evaluate_month_coverage('2025-01', rows, 300)
        self.assertFalse(coverage.covered)
        self.assertEqual(coverage.as_dict(), {'month': '2025-01', 'expected': 300, 'paid': 100, 'shortfall': 200})

    def test_empty_month_is_uncovered(self):
        coverage = evaluate_month_coverage('2025-01', [], 300)
        self.assertEqual(coverage.basis, CoverageBasis.UNCOVERED)
        self.assertEqual(coverage.shortfall, 300)
