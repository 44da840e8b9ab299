# subscriptions/billing.py

"""
Stripe adapter for subscription plan changes.

All calls go through `_call`, which applies the configured timeout and
retry budget and converts Stripe errors into ProviderError. Nothing here
touches the database: the orchestrator calls the provider first and only
then writes locally.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import stripe

from fees.conf import get_ledger_settings
from fees.exceptions import ProviderError
from utils.utils import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: str
    status: str
    item_id: str
    default_payment_method: str = ''
    current_period_end: object = None


@dataclass(frozen=True)
class ProviderInvoice:
    id: str
    status: str
    total: Decimal
    amount_due: Decimal


@dataclass(frozen=True)
class CollectionOutcome:
    collected: bool
    detail: str


def timestamp_to_date(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc).date()


class StripeBillingProvider:
    """Thin wrapper over the Stripe API for the calls plan changes need."""

    name = 'stripe'

    def __init__(self, api_key=None, timeout=None, max_retries=None):
        conf = get_ledger_settings()
        self.api_key = api_key or conf.stripe_secret_key
        self.timeout = timeout or conf.provider_timeout
        self.max_retries = conf.provider_max_retries if max_retries is None else max_retries

        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        stripe.max_network_retries = self.max_retries

    def _call(self, action, func, *args, **kwargs):
        if not self.api_key:
            raise ProviderError("Billing provider is not configured.")
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.error(f"Stripe unavailable while trying to {action}: {exc}")
            raise ProviderError(
                f"Billing provider is unavailable ({action}). Please retry.",
                retryable=True,
            )
        except stripe.StripeError as exc:
            logger.error(f"Stripe rejected {action}: {exc}")
            message = getattr(exc, 'user_message', None) or str(exc)
            raise ProviderError(f"Billing provider error while trying to {action}: {message}")

    # -------------------------------------------------------------------------
    # SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    def retrieve_subscription(self, external_id):
        sub = self._call("retrieve subscription", stripe.Subscription.retrieve, external_id)

        items = sub['items']['data']
        if not items:
            raise ProviderError(f"Subscription {external_id} has no billable items.")
        item = items[0]

        period_end = sub.get('current_period_end') or item.get('current_period_end')
        payment_method = sub.get('default_payment_method') or sub.get('default_source') or ''
        if not isinstance(payment_method, str):
            payment_method = payment_method['id']

        customer = sub['customer']
        return ProviderSubscription(
            id=sub['id'],
            customer_id=customer if isinstance(customer, str) else customer['id'],
            status=sub['status'],
            item_id=item['id'],
            default_payment_method=payment_method,
            current_period_end=timestamp_to_date(period_end),
        )

    def swap_plan(self, subscription, package, direction):
        """
        Point the subscription at a new recurring price for `package`.

        Provider-side proration is disabled; the engine builds its own
        proration invoice.
        """
        product = (
            {'product': package.provider_product_id}
            if package.provider_product_id
            else {'product_data': {'name': package.name}}
        )
        price = self._call(
            "create price",
            stripe.Price.create,
            unit_amount=to_minor_units(package.price),
            currency=package.currency.lower(),
            recurring={'interval': 'month', 'interval_count': package.duration_months},
            metadata={'package_id': str(package.pk)},
            **product,
        )
        self._call(
            "update subscription plan",
            stripe.Subscription.modify,
            subscription.id,
            items=[{'id': subscription.item_id, 'price': price['id']}],
            proration_behavior='none',
            metadata={'package_id': str(package.pk), 'transition': direction},
        )
        logger.info(f"Swapped Stripe subscription {subscription.id} to price {price['id']} ({direction})")
        return price['id']

    def cancel_at_period_end(self, external_id):
        sub = self._call(
            "cancel subscription",
            stripe.Subscription.modify,
            external_id,
            cancel_at_period_end=True,
        )
        logger.info(f"Stripe subscription {external_id} set to cancel at period end")
        return sub['status']

    # -------------------------------------------------------------------------
    # INVOICES
    # -------------------------------------------------------------------------

    def create_proration_invoice(self, subscription, credit_amount, charge_amount, currency, direction, description):
        """
        Build and finalize an invoice with an explicit credit line
        (negative) and a full-price charge line (positive).

        The finalized invoice total is the authoritative net amount:
        negative means the customer is owed credit.
        """
        currency = currency.lower()
        metadata = {'transition': direction, 'subscription': subscription.id}

        invoice = self._call(
            "create invoice",
            stripe.Invoice.create,
            customer=subscription.customer_id,
            auto_advance=False,
            collection_method='charge_automatically',
            pending_invoice_items_behavior='exclude',
            description=description,
            metadata=metadata,
        )

        if credit_amount > 0:
            self._call(
                "add credit line",
                stripe.InvoiceItem.create,
                customer=subscription.customer_id,
                invoice=invoice['id'],
                amount=-to_minor_units(credit_amount),
                currency=currency,
                description=f"Credit for unused time on previous plan ({direction})",
                metadata=metadata,
            )
        self._call(
            "add charge line",
            stripe.InvoiceItem.create,
            customer=subscription.customer_id,
            invoice=invoice['id'],
            amount=to_minor_units(charge_amount),
            currency=currency,
            description=f"New plan charge ({direction})",
            metadata=metadata,
        )

        finalized = self._call("finalize invoice", stripe.Invoice.finalize_invoice, invoice['id'], auto_advance=False)

        result = ProviderInvoice(
            id=finalized['id'],
            status=finalized['status'],
            total=from_minor_units(finalized['total']),
            amount_due=from_minor_units(finalized['amount_due']),
        )
        logger.info(f"Finalized Stripe invoice {result.id}: total {result.total} {currency.upper()} ({direction})")
        return result

    def collect_invoice(self, invoice, payment_method):
        """
        Try to charge an open invoice.

        Never raises: a missing payment method or a declined charge leaves
        the invoice open for manual collection.
        """
        if invoice.amount_due <= 0:
            return CollectionOutcome(collected=False, detail="Nothing to collect.")
        if not payment_method:
            logger.warning(f"No default payment method for invoice {invoice.id}; left open for manual collection")
            return CollectionOutcome(collected=False, detail="No default payment method; invoice left open.")
        try:
            paid = self._call("pay invoice", stripe.Invoice.pay, invoice.id, payment_method=payment_method)
        except ProviderError as exc:
            logger.warning(f"Collection of invoice {invoice.id} failed; left open: {exc.message}")
            return CollectionOutcome(collected=False, detail=exc.message)
        return CollectionOutcome(collected=paid['status'] == 'paid', detail=f"Invoice {paid['status']}.")
