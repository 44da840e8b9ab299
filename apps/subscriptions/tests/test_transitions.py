import json
from datetime import date
from decimal import Decimal
from unittest import mock

from django.test import TestCase
from django.urls import reverse

from fees.exceptions import ForbiddenError, ProviderError, ValidationError
from fees.models import Deposit, DepositStatus, MonthlyPayment, PaymentSource, PaymentStatus
from fees.services import LedgerWriter
from fees.tests.helpers import controller, make_student, make_user
from subscriptions.models import StudentSubscription, SubscriptionStatus
from subscriptions.services import SubscriptionTransitionService, TransitionDirection, classify_transition
from subscriptions.tests.helpers import fake_provider, make_package, make_subscription
from utils.models import FinancialAuditLog


class ClassifyTransitionTest(TestCase):

    def test_price_then_duration(self):
        monthly = make_package('Monthly', 300, 1)
        quarterly = make_package('Quarterly', 900, 3)
        same_price_longer = make_package('Monthly Plus', 300, 2)

        self.assertEqual(classify_transition(quarterly, monthly), TransitionDirection.DOWNGRADE)
        self.assertEqual(classify_transition(monthly, quarterly), TransitionDirection.UPGRADE)
        self.assertEqual(classify_transition(monthly, same_price_longer), TransitionDirection.UPGRADE)
        self.assertIsNone(classify_transition(monthly, make_package('Monthly Copy', 300, 1)))


class DowngradeTest(TestCase):

    def setUp(self):
        self.student = make_student()
        self.quarterly = make_package('Quarterly', 900, 3)
        self.lite = make_package('Lite', 240, 1)
        self.subscription = make_subscription(self.student, self.quarterly)

        LedgerWriter.record_payment(self.student.pk, '2025-01', 300, 'full', 'paid')
        self.february = LedgerWriter.record_payment(self.student.pk, '2025-02', 100, 'partial', 'pending').payment

        # Credit 450 for 45 unused days, charge 240
        self.provider = fake_provider('-210.00')
        self.service = SubscriptionTransitionService(provider=self.provider)

    def downgrade(self, **kwargs):
        return self.service.downgrade(self.subscription.pk, self.lite.pk, transition_date=date(2025, 2, 15), **kwargs)

    def test_downgrade_records_credit_and_moves_cycle(self):
        result = self.downgrade(staff=controller())

        self.assertTrue(result.is_credit)
        self.assertEqual(result.net_amount, Decimal('-210.00'))
        self.assertEqual(result.proration.credit_amount, Decimal('450.00'))

        payment = result.payment
        self.assertEqual(payment.amount, Decimal('210.00'))
        self.assertTrue(payment.reason.startswith('CREDIT:'))
        self.assertTrue(payment.is_credit)
        self.assertEqual(payment.metadata['type'], 'downgrade_credit')
        self.assertEqual(payment.status, DepositStatus.APPROVED)
        self.assertEqual(payment.source, PaymentSource.STRIPE)
        self.assertEqual(payment.subscription_id, self.subscription.pk)
        self.assertEqual(payment.transaction_id, 'downgrade-in_123')

        subscription = StudentSubscription.objects.get(pk=self.subscription.pk)
        self.assertEqual(subscription.package_id, self.lite.pk)
        self.assertEqual((subscription.start_date, subscription.end_date), (date(2025, 2, 15), date(2025, 3, 15)))
        self.assertEqual(subscription.next_billing_date, date(2025, 3, 15))

        self.provider.swap_plan.assert_called_once()
        self.assertEqual(self.provider.swap_plan.call_args.args[2], 'downgrade')
        invoice_args = self.provider.create_proration_invoice.call_args.args
        self.assertEqual(invoice_args[1:5], (Decimal('450.00'), Decimal('240.00'), 'ETB', 'downgrade'))

        self.assertTrue(FinancialAuditLog.objects.filter(action='SUBSCRIPTION_TRANSITION').exists())

    def test_months_from_transition_onward_are_rewritten(self):
        result = self.downgrade()

        self.assertEqual(result.months.updated, ['2025-02'])
        self.assertEqual(result.months.created, ['2025-03'])

        self.february.refresh_from_db()
        self.assertEqual((self.february.paid_amount, self.february.status), (240, PaymentStatus.PAID))

        march = MonthlyPayment.objects.get(student=self.student, month='2025-03')
        self.assertEqual((march.paid_amount, march.status, march.payment_type), (240, 'paid', 'full'))
        self.assertEqual(march.deposit_id, result.payment.pk)
        self.assertEqual(march.source, PaymentSource.STRIPE)

    def test_earlier_months_are_untouched(self):
        before = list(MonthlyPayment.objects.filter(student=self.student, month__lt='2025-02').values())

        self.downgrade()

        after = list(MonthlyPayment.objects.filter(student=self.student, month__lt='2025-02').values())
        self.assertEqual(before, after)

    def test_provider_failure_writes_nothing(self):
        self.provider.create_proration_invoice.side_effect = ProviderError("Card declined")
        rows_before = list(MonthlyPayment.objects.values())

        with self.assertRaises(ProviderError):
            self.downgrade()

        subscription = StudentSubscription.objects.get(pk=self.subscription.pk)
        self.assertEqual(subscription.package_id, self.quarterly.pk)
        self.assertEqual(subscription.end_date, date(2025, 4, 1))
        self.assertFalse(Deposit.objects.exists())
        self.assertEqual(list(MonthlyPayment.objects.values()), rows_before)

    def test_change_dated_outside_the_cycle_is_rejected(self):
        rows_before = list(MonthlyPayment.objects.values())

        for day in (date(2024, 11, 1), date(2024, 12, 31), date(2025, 4, 1)):
            with self.subTest(day=day):
                with self.assertRaises(ValidationError):
                    self.service.downgrade(self.subscription.pk, self.lite.pk, transition_date=day)

        self.provider.retrieve_subscription.assert_not_called()
        self.provider.swap_plan.assert_not_called()
        self.assertEqual(list(MonthlyPayment.objects.values()), rows_before)
        self.assertFalse(Deposit.objects.exists())

    def test_free_month_is_left_alone(self):
        LedgerWriter.record_payment(self.student.pk, '2025-03', 0, 'free', 'paid', free_month_reason='Holiday')
        result = self.downgrade()

        self.assertNotIn('2025-03', result.months.created + result.months.updated)
        self.assertEqual(MonthlyPayment.objects.filter(student=self.student, month='2025-03').count(), 1)


class TransitionValidationTest(TestCase):

    def setUp(self):
        self.student = make_student()
        self.monthly = make_package('Monthly', 300, 1)
        self.quarterly = make_package('Quarterly', 900, 3)
        self.subscription = make_subscription(self.student, self.quarterly)
        self.provider = fake_provider('0')
        self.service = SubscriptionTransitionService(provider=self.provider)

    def assertRejected(self, exc_class, func, *args, **kwargs):
        with self.assertRaises(exc_class):
            func(*args, **kwargs)
        self.provider.retrieve_subscription.assert_not_called()
        self.assertFalse(Deposit.objects.exists())

    def test_direction_must_match_packages(self):
        self.assertRejected(ValidationError, self.service.upgrade, self.subscription.pk, self.monthly.pk)

    def test_same_package(self):
        self.assertRejected(ValidationError, self.service.downgrade, self.subscription.pk, self.quarterly.pk)

    def test_inactive_package(self):
        self.monthly.is_active = False
        self.monthly.save()
        self.assertRejected(ValidationError, self.service.downgrade, self.subscription.pk, self.monthly.pk)

    def test_currency_must_match_student(self):
        usd = make_package('Monthly USD', 10, 1, currency='USD')
        self.assertRejected(ValidationError, self.service.downgrade, self.subscription.pk, usd.pk)

    def test_cancelled_subscription(self):
        self.subscription.status = SubscriptionStatus.CANCELLED
        self.subscription.save()
        self.assertRejected(ValidationError, self.service.downgrade, self.subscription.pk, self.monthly.pk)

    def test_controller_of_another_student(self):
        self.assertRejected(ForbiddenError, self.service.downgrade, self.subscription.pk, self.monthly.pk,
                            staff=controller('someone.else'))


class UpgradeTest(TestCase):

    def setUp(self):
        self.student = make_student()
        self.monthly = make_package('Monthly', 300, 1)
        self.quarterly = make_package('Quarterly', 900, 3)
        self.subscription = make_subscription(self.student, self.monthly, end=date(2025, 2, 1))
        LedgerWriter.record_payment(self.student.pk, '2025-01', 300, 'full', 'paid')

    def test_upgrade_records_charge(self):
        provider = fake_provider('745.16')
        result = SubscriptionTransitionService(provider=provider).upgrade(
            self.subscription.pk, self.quarterly.pk, transition_date=date(2025, 1, 16)
        )

        self.assertFalse(result.is_credit)
        self.assertEqual(result.payment.amount, Decimal('745.16'))
        self.assertTrue(result.payment.reason.startswith('CHARGE:'))
        self.assertEqual(result.payment.metadata['type'], 'upgrade_charge')
        self.assertEqual(result.months.created, ['2025-02', '2025-03', '2025-04'])
        self.assertEqual(result.months.updated, [])
        provider.collect_invoice.assert_called_once()

    def test_credit_larger_than_charge_is_not_refunded(self):
        result = SubscriptionTransitionService(provider=fake_provider('-20.00')).upgrade(
            self.subscription.pk, self.quarterly.pk, transition_date=date(2025, 1, 16)
        )
        self.assertEqual(result.net_amount, Decimal('0.00'))


class CancelTest(TestCase):

    def setUp(self):
        self.student = make_student()
        self.subscription = make_subscription(self.student, make_package('Quarterly', 900, 3))
        self.provider = fake_provider('0')

    def test_cancel_is_idempotent(self):
        service = SubscriptionTransitionService(provider=self.provider)
        service.cancel(self.subscription.pk)
        service.cancel(self.subscription.pk)

        self.provider.cancel_at_period_end.assert_called_once_with('sub_123')
        subscription = StudentSubscription.objects.get(pk=self.subscription.pk)
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)
        self.assertIsNone(subscription.next_billing_date)


class TransitionViewTest(TestCase):

    def setUp(self):
        self.student = make_student()
        self.quarterly = make_package('Quarterly', 900, 3)
        self.lite = make_package('Lite', 240, 1)
        self.subscription = make_subscription(self.student, self.quarterly)
        self.client.force_login(make_user('admin', superuser=True))

        today = mock.patch('subscriptions.services.get_school_today', return_value=date(2025, 2, 15))
        today.start()
        self.addCleanup(today.stop)

    def patch(self, action, data):
        url = reverse(f'subscriptions:{action}', args=[self.subscription.pk])
        return self.client.patch(url, data=json.dumps(data), content_type='application/json')

    def test_downgrade_endpoint(self):
        with mock.patch('subscriptions.services.StripeBillingProvider', return_value=fake_provider('-210.00')):
            response = self.patch('downgrade', {'newPackageId': str(self.lite.pk)})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['transition']['isCredit'])
        self.assertEqual(body['transition']['netAmount'], '-210.00')
        self.assertEqual(body['transition']['proration']['amountDueNow'], '0.00')

    def test_client_cannot_choose_the_change_date(self):
        with mock.patch('subscriptions.services.StripeBillingProvider', return_value=fake_provider('-210.00')):
            response = self.patch('downgrade', {'newPackageId': str(self.lite.pk), 'transitionDate': '2024-11-01'})

        self.assertEqual(response.status_code, 200)
        proration = response.json()['transition']['proration']
        self.assertEqual(proration['daysRemaining'], 45)
        self.assertEqual(proration['creditAmount'], '450.00')

        subscription = StudentSubscription.objects.get(pk=self.subscription.pk)
        self.assertEqual(subscription.start_date, date(2025, 2, 15))

    def test_provider_error_is_a_500(self):
        provider = fake_provider('-210.00')
        provider.swap_plan.side_effect = ProviderError("Billing provider is unavailable.", retryable=True)
        with mock.patch('subscriptions.services.StripeBillingProvider', return_value=provider):
            response = self.patch('downgrade', {'newPackageId': str(self.lite.pk)})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'provider_error')
        self.assertTrue(response.json()['details']['retryable'])

    def test_missing_package(self):
        response = self.patch('upgrade', {})
        self.assertEqual(response.status_code, 400)
