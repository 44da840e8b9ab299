import hashlib
import hmac
import json
import time
from datetime import date, datetime, timezone
from decimal import Decimal

from django.test import TestCase, override_settings
from django.urls import reverse

from fees.models import CheckoutStatus, Deposit, MonthlyPayment, PaymentCheckout
from fees.services import CheckoutService
from fees.tests.helpers import make_student
from subscriptions.models import StudentSubscription, SubscriptionStatus
from subscriptions.tests.helpers import make_package, make_subscription
from subscriptions.webhooks import chapa_signature

STRIPE_SECRET = 'whsec_test_secret'
CHAPA_SECRET = 'chapa_test_secret'


def ts(value):
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())


def stripe_header(payload, secret=STRIPE_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@override_settings(TUITION_LEDGER={'STRIPE_WEBHOOK_SECRET': STRIPE_SECRET, 'CHAPA_WEBHOOK_SECRET': CHAPA_SECRET})
class StripeWebhookTest(TestCase):

    def setUp(self):
        self.url = reverse('stripe_webhook')
        self.student = make_student()
        self.monthly = make_package('Monthly', 300, 1)
        self.subscription = make_subscription(self.student, self.monthly, end=date(2025, 2, 1))

    def deliver(self, event_type, obj, header=None):
        payload = json.dumps({'id': 'evt_1', 'type': event_type, 'data': {'object': obj}})
        return self.client.post(
            self.url, data=payload, content_type='application/json',
            HTTP_STRIPE_SIGNATURE=header if header is not None else stripe_header(payload),
        )

    def renewal_invoice(self, invoice_id='in_renew_1', **extra):
        invoice = {
            'id': invoice_id,
            'subscription': 'sub_123',
            'amount_paid': 30000,
            'lines': {'data': [{'period': {'start': ts(date(2025, 2, 1)), 'end': ts(date(2025, 3, 1))}}]},
            'metadata': {},
        }
        invoice.update(extra)
        return invoice

    def test_bad_signature_is_rejected(self):
        payload = json.dumps({'id': 'evt_1', 'type': 'invoice.payment_succeeded', 'data': {'object': {}}})
        response = self.client.post(
            self.url, data=payload, content_type='application/json',
            HTTP_STRIPE_SIGNATURE=stripe_header(payload, secret='whsec_wrong'),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_signature')

    def test_missing_signature_is_rejected(self):
        response = self.deliver('invoice.payment_succeeded', self.renewal_invoice(), header='')
        self.assertEqual(response.status_code, 400)
        self.assertFalse(Deposit.objects.exists())

    def test_stale_signature_is_rejected(self):
        payload = json.dumps({'id': 'evt_1', 'type': 'customer.subscription.deleted', 'data': {'object': {}}})
        response = self.client.post(
            self.url, data=payload, content_type='application/json',
            HTTP_STRIPE_SIGNATURE=stripe_header(payload, timestamp=int(time.time()) - 3600),
        )
        self.assertEqual(response.status_code, 400)

    @override_settings(TUITION_LEDGER={})
    def test_unconfigured_secret_is_rejected(self):
        response = self.deliver('customer.subscription.deleted', {'id': 'sub_123'})
        self.assertEqual(response.status_code, 400)

    def test_renewal_is_recorded_once(self):
        first = self.deliver('invoice.payment_succeeded', self.renewal_invoice())
        second = self.deliver('invoice.payment_succeeded', self.renewal_invoice())

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()['detail'], 'recorded')
        self.assertEqual(second.json()['detail'], 'already recorded')

        deposit = Deposit.objects.get(transaction_id='in_renew_1')
        self.assertEqual(deposit.amount, Decimal('300.00'))
        self.assertEqual(deposit.subscription_id, self.subscription.pk)

        subscription = StudentSubscription.objects.get(pk=self.subscription.pk)
        self.assertEqual((subscription.start_date, subscription.end_date), (date(2025, 2, 1), date(2025, 3, 1)))
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

        rows = MonthlyPayment.objects.filter(student=self.student)
        self.assertEqual([(r.month, r.paid_amount, r.status) for r in rows], [('2025-02', 300, 'paid')])

    def test_transition_invoices_are_ignored(self):
        response = self.deliver('invoice.payment_succeeded',
                                self.renewal_invoice(metadata={'transition': 'upgrade'}))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['handled'])
        self.assertFalse(Deposit.objects.exists())

    def test_renewal_for_unknown_subscription_is_acknowledged(self):
        response = self.deliver('invoice.payment_succeeded', self.renewal_invoice(subscription='sub_unknown'))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['handled'])

    def test_failed_payment_marks_past_due(self):
        self.deliver('invoice.payment_failed', self.renewal_invoice())
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.PAST_DUE)

    def test_deleted_subscription_is_cancelled(self):
        self.deliver('customer.subscription.deleted', {'id': 'sub_123', 'status': 'canceled'})
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.CANCELLED)
        self.assertIsNone(self.subscription.next_billing_date)

    def test_updated_subscription_syncs_status_and_period(self):
        self.deliver('customer.subscription.updated', {
            'id': 'sub_123', 'status': 'unpaid', 'current_period_end': ts(date(2025, 3, 1)),
        })
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(self.subscription.end_date, date(2025, 3, 1))

    def test_unknown_event_is_acknowledged(self):
        response = self.deliver('customer.created', {'id': 'cus_1'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['detail'], 'ignored')

    def test_checkout_session_completes_checkout(self):
        checkout = CheckoutService.open_checkout(self.student.pk, '300', 'stripe')
        session = {
            'id': 'cs_1', 'payment_status': 'paid', 'amount_total': 30000,
            'payment_intent': 'pi_1', 'metadata': {'txRef': checkout.tx_ref},
        }
        self.deliver('checkout.session.completed', session)
        self.deliver('checkout.session.completed', session)

        checkout.refresh_from_db()
        self.assertEqual(checkout.status, CheckoutStatus.COMPLETED)
        self.assertEqual(Deposit.objects.filter(transaction_id=checkout.tx_ref).count(), 1)
        self.assertEqual(checkout.deposit.provider_reference, 'pi_1')


@override_settings(TUITION_LEDGER={'CHAPA_WEBHOOK_SECRET': CHAPA_SECRET})
class ChapaWebhookTest(TestCase):

    def setUp(self):
        self.url = reverse('chapa_webhook')
        self.student = make_student()
        self.checkout = CheckoutService.open_checkout(self.student.pk, '300', 'chapa')

    def deliver(self, data, secret=CHAPA_SECRET, header='HTTP_CHAPA_SIGNATURE'):
        payload = json.dumps(data).encode('utf-8')
        return self.client.post(self.url, data=payload, content_type='application/json',
                                **{header: chapa_signature(payload, secret)})

    def test_successful_payment(self):
        response = self.deliver({'tx_ref': self.checkout.tx_ref, 'status': 'success', 'reference': 'APfx1'})

        self.assertEqual(response.status_code, 200)
        self.checkout.refresh_from_db()
        self.assertEqual(self.checkout.status, CheckoutStatus.COMPLETED)
        self.assertEqual(self.checkout.deposit.source, 'chapa')
        self.assertEqual(self.checkout.deposit.provider_reference, 'APfx1')

    def test_alternate_signature_header(self):
        response = self.deliver({'tx_ref': self.checkout.tx_ref, 'status': 'failed'}, header='HTTP_X_CHAPA_SIGNATURE')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(PaymentCheckout.objects.get(pk=self.checkout.pk).status, CheckoutStatus.FAILED)

    def test_bad_signature(self):
        response = self.deliver({'tx_ref': self.checkout.tx_ref, 'status': 'success'}, secret='wrong')
        self.assertEqual(response.status_code, 400)
        self.assertFalse(Deposit.objects.exists())

    def test_unknown_tx_ref_is_acknowledged(self):
        response = self.deliver({'tx_ref': 'CHAPA-NOPE', 'status': 'success'})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['handled'])

    def test_wrapped_envelope_is_finalized(self):
        response = self.deliver({
            'event': 'charge.success',
            'status': 'success',
            'data': {'tx_ref': self.checkout.tx_ref, 'amount': '300.00', 'currency': 'ETB', 'reference': 'APfx2'},
        })

        self.assertEqual(response.status_code, 200)
        self.checkout.refresh_from_db()
        self.assertEqual(self.checkout.status, CheckoutStatus.COMPLETED)
        self.assertEqual(self.checkout.deposit.amount, Decimal('300.00'))
        self.assertEqual(self.checkout.deposit.provider_reference, 'APfx2')

    def test_successful_status_and_camel_case_reference(self):
        response = self.deliver({'txRef': self.checkout.tx_ref, 'status': 'successful'})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['handled'])
        self.assertEqual(PaymentCheckout.objects.get(pk=self.checkout.pk).status, CheckoutStatus.COMPLETED)

    def test_status_nested_in_data(self):
        response = self.deliver({'data': {'tx_ref': self.checkout.tx_ref, 'status': 'cancelled'}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(PaymentCheckout.objects.get(pk=self.checkout.pk).status, CheckoutStatus.FAILED)

    def test_pending_status_is_ignored(self):
        response = self.deliver({'tx_ref': self.checkout.tx_ref, 'status': 'pending'})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['handled'])
        self.assertEqual(PaymentCheckout.objects.get(pk=self.checkout.pk).status, CheckoutStatus.PENDING)
