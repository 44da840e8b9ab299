from datetime import date
from decimal import Decimal
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, override_settings

from fees.exceptions import ImmutableError, InUseError, ValidationError
from fees.models import CheckoutStatus, Deposit, DepositStatus, MonthlyPayment, PaymentSource, PaymentStatus
from fees.services import CheckoutService, DepositService, LedgerWriter
from fees.tests.helpers import controller, make_student


class DepositImmutabilityTest(TestCase):

    def setUp(self):
        self.student = make_student()

    def test_approved_deposit_cannot_be_edited_or_deleted(self):
        deposit = DepositService.record_deposit(self.student.pk, '300', status='approved').deposit

        with self.assertRaises(ImmutableError):
            DepositService.update_deposit(deposit.pk, amount='250')
        with self.assertRaises(ImmutableError):
            DepositService.delete_deposit(deposit.pk)
        with self.assertRaises(ImmutableError):
            DepositService.set_status(deposit.pk, 'rejected')

        deposit.refresh_from_db()
        self.assertEqual(deposit.amount, Decimal('300.00'))

    def test_pending_manual_deposit_can_be_edited_and_deleted(self):
        deposit = DepositService.record_deposit(self.student.pk, '300', transaction_id='BANK-001').deposit

        updated = DepositService.update_deposit(deposit.pk, amount='275.5', reason='Bank transfer').deposit
        self.assertEqual(updated.amount, Decimal('275.50'))
        self.assertEqual(updated.reason, 'Bank transfer')

        self.assertEqual(DepositService.delete_deposit(deposit.pk), 'BANK-001')
        self.assertFalse(Deposit.objects.exists())

    def test_gateway_deposit_is_immutable_even_when_pending(self):
        deposit = DepositService.record_deposit(self.student.pk, '300', source='chapa').deposit
        with self.assertRaises(ImmutableError):
            DepositService.update_deposit(deposit.pk, amount='100')

    def test_deposit_in_use_cannot_be_changed(self):
        deposit = DepositService.record_deposit(self.student.pk, '300').deposit
        LedgerWriter.record_payment(self.student.pk, '2025-01', 300, 'full', 'paid', deposit=deposit)

        with self.assertRaises(InUseError):
            DepositService.delete_deposit(deposit.pk)

    def test_duplicate_transaction_id_is_rejected(self):
        DepositService.record_deposit(self.student.pk, '300', transaction_id='BANK-001')
        with self.assertRaises(ValidationError):
            DepositService.record_deposit(self.student.pk, '100', transaction_id='BANK-001')

    def test_new_deposit_cannot_be_rejected(self):
        with self.assertRaises(ValidationError):
            DepositService.record_deposit(self.student.pk, '300', status='rejected')

    def test_generated_transaction_id_and_student_currency(self):
        deposit = DepositService.record_deposit(self.student.pk, '300').deposit
        self.assertTrue(deposit.transaction_id.startswith('DEP-'))
        self.assertEqual(deposit.currency, 'ETB')
        self.assertEqual(deposit.status, DepositStatus.PENDING)


class AutoApplyTest(TestCase):

    def setUp(self):
        self.student = make_student()

    def test_approval_fills_oldest_months_first(self):
        deposit = DepositService.record_deposit(self.student.pk, '750').deposit

        result = DepositService.set_status(deposit.pk, 'approved', staff=controller())

        self.assertEqual(result.auto_apply.status, 'applied')
        rows = list(MonthlyPayment.objects.filter(deposit=deposit).order_by('month'))
        self.assertEqual([(r.month, r.paid_amount, r.status) for r in rows], [
            ('2025-01', 300, PaymentStatus.PAID),
            ('2025-02', 300, PaymentStatus.PAID),
            ('2025-03', 150, PaymentStatus.PENDING),
        ])

    def test_existing_partial_is_topped_up(self):
        LedgerWriter.record_payment(self.student.pk, '2025-01', 100, 'partial', 'pending')
        deposit = DepositService.record_deposit(self.student.pk, '200').deposit
        DepositService.set_status(deposit.pk, 'approved')

        row = MonthlyPayment.objects.get(deposit=deposit)
        self.assertEqual((row.month, row.paid_amount, row.payment_type, row.status),
                         ('2025-01', 200, 'partial', PaymentStatus.PAID))

    def test_applies_only_up_to_today(self):
        deposit = Deposit.objects.create(
            student=self.student, amount=Decimal('1500'), currency='ETB', status=DepositStatus.APPROVED,
            transaction_id='BANK-BIG', payment_date=date(2025, 2, 1),
        )
        result = DepositService.auto_apply_to_months(deposit.pk, today=date(2025, 2, 10))

        self.assertEqual([a['month'] for a in result.allocations], ['2025-01', '2025-02'])
        self.assertEqual(result.remaining, Decimal('900.00'))

    def test_second_application_is_a_no_op(self):
        deposit = DepositService.record_deposit(self.student.pk, '300', status='approved').deposit
        result = DepositService.auto_apply_to_months(deposit.pk)

        self.assertTrue(result.already_applied)
        self.assertEqual(MonthlyPayment.objects.filter(deposit=deposit).count(), 1)

    def test_failure_keeps_the_approval(self):
        deposit = DepositService.record_deposit(self.student.pk, '300').deposit

        with mock.patch.object(DepositService, 'auto_apply_to_months', side_effect=DatabaseError('locked')):
            result = DepositService.set_status(deposit.pk, 'approved')

        self.assertTrue(result.auto_apply.degraded)
        deposit.refresh_from_db()
        self.assertEqual(deposit.status, DepositStatus.APPROVED)

    @override_settings(TUITION_LEDGER={'AUTO_APPLY_DEPOSITS': False})
    def test_disabled_by_setting(self):
        result = DepositService.record_deposit(self.student.pk, '300', status='approved')
        self.assertEqual(result.auto_apply.status, 'skipped')
        self.assertFalse(MonthlyPayment.objects.exists())


class CheckoutTest(TestCase):

    def setUp(self):
        self.student = make_student()

    def test_successful_checkout_creates_gateway_deposit(self):
        checkout = CheckoutService.open_checkout(self.student.pk, '300', 'chapa', intent='monthly', months=['2025-1'])
        self.assertEqual(checkout.months, ['2025-01'])

        result = CheckoutService.finalize(checkout.tx_ref, success=True, provider_reference='CH-123')

        self.assertEqual(result.checkout.status, CheckoutStatus.COMPLETED)
        self.assertEqual(result.deposit.transaction_id, checkout.tx_ref)
        self.assertEqual(result.deposit.source, PaymentSource.CHAPA)
        self.assertEqual(result.deposit.status, DepositStatus.APPROVED)
        row = MonthlyPayment.objects.get(deposit=result.deposit)
        self.assertEqual((row.month, row.status), ('2025-01', PaymentStatus.PAID))

    def test_finalize_is_idempotent(self):
        checkout = CheckoutService.open_checkout(self.student.pk, '300', 'stripe')
        CheckoutService.finalize(checkout.tx_ref, success=True)
        again = CheckoutService.finalize(checkout.tx_ref, success=True)

        self.assertTrue(again.already_processed)
        self.assertEqual(Deposit.objects.filter(transaction_id=checkout.tx_ref).count(), 1)

    def test_failed_checkout_records_nothing(self):
        checkout = CheckoutService.open_checkout(self.student.pk, '300', 'chapa')
        result = CheckoutService.finalize(checkout.tx_ref, success=False, failure_reason='Declined')

        self.assertEqual(result.checkout.status, CheckoutStatus.FAILED)
        self.assertFalse(Deposit.objects.exists())

    def test_manual_is_not_a_gateway(self):
        with self.assertRaises(ValidationError):
            CheckoutService.open_checkout(self.student.pk, '300', 'manual')
