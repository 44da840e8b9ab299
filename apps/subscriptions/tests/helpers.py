# subscriptions/tests/helpers.py

from datetime import date
from decimal import Decimal
from unittest import mock

from subscriptions.billing import CollectionOutcome, ProviderInvoice, ProviderSubscription
from subscriptions.models import StudentSubscription, SubscriptionPackage, SubscriptionStatus


def make_package(name, price, duration_months, currency='ETB', **kwargs):
    return SubscriptionPackage.objects.create(
        name=name, price=Decimal(str(price)), duration_months=duration_months, currency=currency, **kwargs
    )


def make_subscription(student, package, start=date(2025, 1, 1), end=date(2025, 4, 1),
                      external_id='sub_123', status=SubscriptionStatus.ACTIVE):
    return StudentSubscription.objects.create(
        student=student,
        package=package,
        status=status,
        start_date=start,
        end_date=end,
        next_billing_date=end,
        external_subscription_id=external_id,
        external_customer_id='cus_123',
    )


def fake_provider(invoice_total, invoice_id='in_123', payment_method='pm_123'):
    """A billing-provider double whose invoice total is `invoice_total`."""
    provider = mock.Mock()
    provider.retrieve_subscription.return_value = ProviderSubscription(
        id='sub_123', customer_id='cus_123', status='active', item_id='si_123',
        default_payment_method=payment_method,
    )
    total = Decimal(str(invoice_total))
    provider.create_proration_invoice.return_value = ProviderInvoice(
        id=invoice_id, status='open', total=total, amount_due=max(total, Decimal('0')),
    )
    provider.collect_invoice.return_value = CollectionOutcome(collected=total > 0, detail='Invoice paid.')
    return provider
