# subscriptions/webhooks.py

"""
Inbound gateway webhooks.

Both gateways are verified before anything is parsed:
- Stripe: `Stripe-Signature` header checked with stripe.WebhookSignature
- Chapa: hex HMAC-SHA256 of the raw body under CHAPA_WEBHOOK_SECRET

Every handler is idempotent; gateways redeliver freely.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass

import stripe

from fees.conf import get_ledger_settings
from fees.exceptions import NotFoundError, ValidationError, WebhookSignatureError
from fees.services import CheckoutService
from subscriptions.billing import timestamp_to_date
from subscriptions.models import SubscriptionStatus
from subscriptions.services import SubscriptionLifecycleService
from utils.utils import from_minor_units

logger = logging.getLogger(__name__)

CHAPA_SIGNATURE_HEADERS = ('HTTP_CHAPA_SIGNATURE', 'HTTP_X_CHAPA_SIGNATURE')

# Stripe subscription statuses we mirror; anything else is left as is
STRIPE_STATUS_MAP = {
    'trialing': SubscriptionStatus.TRIALING,
    'active': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.PAST_DUE,
    'canceled': SubscriptionStatus.CANCELLED,
    'incomplete_expired': SubscriptionStatus.CANCELLED,
}


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    detail: str = ''

    def as_dict(self):
        return {'event': self.event_type, 'handled': self.handled, 'detail': self.detail}


def _decode_json(payload):
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Webhook payload is not valid JSON.")
    if not isinstance(data, dict):
        raise ValidationError("Webhook payload must be a JSON object.")
    return data


# =============================================================================
# SIGNATURES
# =============================================================================

def verify_stripe_payload(payload, signature_header):
    """Verify a Stripe delivery and return the decoded event dict."""
    conf = get_ledger_settings()
    if not conf.stripe_webhook_secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise WebhookSignatureError("Webhook secret is not configured.")
    if not signature_header:
        raise WebhookSignatureError("Missing Stripe-Signature header.")

    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, conf.stripe_webhook_secret, conf.webhook_tolerance
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning(f"Rejected Stripe webhook: {exc}")
        raise WebhookSignatureError()
    return _decode_json(payload)


def chapa_signature(payload, secret):
    return hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()


def verify_chapa_payload(payload, signature):
    """Verify a Chapa delivery and return the decoded body."""
    conf = get_ledger_settings()
    if not conf.chapa_webhook_secret:
        logger.error("Chapa webhook received but CHAPA_WEBHOOK_SECRET is not configured")
        raise WebhookSignatureError("Webhook secret is not configured.")
    if not signature:
        raise WebhookSignatureError("Missing Chapa signature header.")

    expected = chapa_signature(payload, conf.chapa_webhook_secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Rejected Chapa webhook: signature mismatch")
        raise WebhookSignatureError()
    return _decode_json(payload)


def chapa_signature_from_request(request):
    for header in CHAPA_SIGNATURE_HEADERS:
        value = request.META.get(header)
        if value:
            return value
    return ''


# =============================================================================
# STRIPE EVENTS
# =============================================================================

def _invoice_subscription_id(invoice):
    subscription = invoice.get('subscription')
    if not subscription:
        parent = invoice.get('parent') or {}
        subscription = (parent.get('subscription_details') or {}).get('subscription')
    if isinstance(subscription, dict):
        subscription = subscription.get('id')
    return subscription or ''


def _invoice_period(invoice):
    lines = (invoice.get('lines') or {}).get('data') or []
    period = lines[0].get('period') if lines else None
    if not period:
        return None, None
    return timestamp_to_date(period.get('start')), timestamp_to_date(period.get('end'))


class StripeEventHandler:
    """Dispatch a verified Stripe event to the ledger."""

    def handle(self, event):
        event_type = event.get('type', '')
        obj = (event.get('data') or {}).get('object') or {}
        handler = {
            'checkout.session.completed': self.checkout_completed,
            'checkout.session.expired': self.checkout_expired,
            'invoice.payment_succeeded': self.invoice_paid,
            'invoice.paid': self.invoice_paid,
            'invoice.payment_failed': self.invoice_failed,
            'customer.subscription.deleted': self.subscription_deleted,
            'customer.subscription.updated': self.subscription_updated,
        }.get(event_type)

        if handler is None:
            logger.info(f"Ignoring Stripe event {event.get('id')} of type {event_type}")
            return WebhookOutcome(event_type, handled=False, detail='ignored')

        logger.info(f"Handling Stripe event {event.get('id')} ({event_type})")
        return handler(event_type, obj)

    def _finalize_checkout(self, event_type, session, success):
        metadata = session.get('metadata') or {}
        tx_ref = metadata.get('txRef') or session.get('client_reference_id')
        if not tx_ref:
            return WebhookOutcome(event_type, handled=False, detail='no txRef')

        amount = session.get('amount_total')
        try:
            result = CheckoutService.finalize(
                tx_ref,
                success=success,
                provider_reference=session.get('payment_intent') or session.get('id') or '',
                failure_reason='' if success else 'Checkout session expired',
                amount=from_minor_units(amount) if success and amount is not None else None,
            )
        except NotFoundError:
            logger.warning(f"Stripe checkout for unknown txRef {tx_ref}; acknowledged")
            return WebhookOutcome(event_type, handled=False, detail='unknown txRef')

        detail = 'already processed' if result.already_processed else result.checkout.status
        return WebhookOutcome(event_type, handled=True, detail=detail)

    def checkout_completed(self, event_type, session):
        return self._finalize_checkout(event_type, session, success=session.get('payment_status') != 'unpaid')

    def checkout_expired(self, event_type, session):
        return self._finalize_checkout(event_type, session, success=False)

    def invoice_paid(self, event_type, invoice):
        if (invoice.get('metadata') or {}).get('transition'):
            # Plan-change invoices are recorded by the transition itself
            return WebhookOutcome(event_type, handled=False, detail='transition invoice')

        external_id = _invoice_subscription_id(invoice)
        if not external_id:
            return WebhookOutcome(event_type, handled=False, detail='not a subscription invoice')

        period_start, period_end = _invoice_period(invoice)
        payment, created = SubscriptionLifecycleService.record_renewal(
            external_id,
            invoice['id'],
            from_minor_units(invoice.get('amount_paid') or 0),
            period_start,
            period_end,
        )
        if payment is None:
            return WebhookOutcome(event_type, handled=False, detail='unknown subscription')
        return WebhookOutcome(event_type, handled=True, detail='recorded' if created else 'already recorded')

    def invoice_failed(self, event_type, invoice):
        external_id = _invoice_subscription_id(invoice)
        if not external_id or (invoice.get('metadata') or {}).get('transition'):
            return WebhookOutcome(event_type, handled=False, detail='not a renewal invoice')
        subscription = SubscriptionLifecycleService.set_status(external_id, SubscriptionStatus.PAST_DUE)
        return WebhookOutcome(event_type, handled=subscription is not None)

    def subscription_deleted(self, event_type, sub):
        subscription = SubscriptionLifecycleService.set_status(sub.get('id', ''), SubscriptionStatus.CANCELLED)
        return WebhookOutcome(event_type, handled=subscription is not None)

    def subscription_updated(self, event_type, sub):
        status = STRIPE_STATUS_MAP.get(sub.get('status'))
        if status is None:
            return WebhookOutcome(event_type, handled=False, detail=f"unmapped status {sub.get('status')}")

        items = (sub.get('items') or {}).get('data') or []
        period_end = sub.get('current_period_end') or (items[0].get('current_period_end') if items else None)
        period_end = timestamp_to_date(period_end)

        subscription = SubscriptionLifecycleService.set_status(
            sub.get('id', ''), status, end_date=period_end, next_billing_date=period_end
        )
        return WebhookOutcome(event_type, handled=subscription is not None)


# =============================================================================
# CHAPA EVENTS
# =============================================================================

CHAPA_SUCCESS_STATUSES = ('success', 'successful')
CHAPA_FAILED_STATUSES = ('failed', 'error', 'cancelled')


def _chapa_fields(payload):
    """
    Chapa delivers the same callback in three shapes:
    {status, data: {tx_ref, ...}}, {tx_ref, status, ...} and {data: {tx_ref, status, ...}}.
    Fields are read from the inner object first, then the envelope.
    """
    inner = payload.get('data') if isinstance(payload.get('data'), dict) else payload

    def pick(*keys):
        for source in (inner, payload):
            for key in keys:
                value = source.get(key)
                if value:
                    return value
        return None

    tx_ref = pick('tx_ref', 'txRef', 'trx_ref', 'reference')
    status = str(pick('status') or '').lower()
    return inner, tx_ref, status


def handle_chapa_event(data):
    inner, tx_ref, status = _chapa_fields(data)
    event_type = f"chapa.{status or 'unknown'}"

    if not tx_ref:
        raise ValidationError("tx_ref is required.")
    success = status in CHAPA_SUCCESS_STATUSES
    if not success and status not in CHAPA_FAILED_STATUSES:
        logger.info(f"Ignoring Chapa callback for {tx_ref} with status {status!r}")
        return WebhookOutcome(event_type, handled=False, detail='ignored')

    amount = inner.get('amount') or data.get('amount')
    try:
        result = CheckoutService.finalize(
            tx_ref,
            success=success,
            provider_reference=inner.get('reference') or data.get('reference') or tx_ref,
            failure_reason='' if success else f'Payment {status} at Chapa',
            amount=amount if success else None,
        )
    except NotFoundError:
        logger.warning(f"Chapa callback for unknown tx_ref {tx_ref}; acknowledged")
        return WebhookOutcome(event_type, handled=False, detail='unknown tx_ref')

    detail = 'already processed' if result.already_processed else result.checkout.status
    return WebhookOutcome(event_type, handled=True, detail=detail)
