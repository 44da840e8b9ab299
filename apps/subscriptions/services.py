# subscriptions/services.py

"""
Subscription plan changes and provider-driven lifecycle updates.

Order of work for an upgrade or downgrade:
1. validate locally (status, package, currency, direction)
2. compute proration
3. make every provider call: swap the price, build and finalize the
   proration invoice, attempt collection
4. one local transaction: move the subscription to the new package and
   cycle, record the settlement payment, rewrite ledger rows from the
   transition month forward

A ProviderError in step 3 aborts before anything local is written.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from fees.conf import get_ledger_settings
from fees.exceptions import NotFoundError, ValidationError
from fees.models import Deposit, DepositStatus, MonthlyPayment, PaymentSource, PaymentStatus, PaymentType
from fees.schedule import month_end, month_start
from students.models import Student
from subscriptions.billing import StripeBillingProvider
from subscriptions.models import StudentSubscription, SubscriptionPackage, SubscriptionStatus
from subscriptions.proration import calculate_proration, cycle_months, new_cycle
from utils.audit import log_financial_activity
from utils.utils import get_school_today, round_to_currency, round_whole

logger = logging.getLogger(__name__)


class TransitionDirection(str, Enum):
    UPGRADE = 'upgrade'
    DOWNGRADE = 'downgrade'


def classify_transition(current, new):
    """
    UPGRADE or DOWNGRADE by comparing price, then duration; None when the
    two packages have identical terms.
    """
    current_terms = (current.price, current.duration_months)
    new_terms = (new.price, new.duration_months)
    if new_terms > current_terms:
        return TransitionDirection.UPGRADE
    if new_terms < current_terms:
        return TransitionDirection.DOWNGRADE
    return None


@dataclass(frozen=True)
class MonthRewrite:
    updated: list
    created: list


@dataclass(frozen=True)
class TransitionResult:
    subscription: StudentSubscription
    direction: TransitionDirection
    proration: object
    invoice: object
    net_amount: Decimal
    payment: Deposit
    months: MonthRewrite
    collection: object

    @property
    def is_credit(self):
        return self.net_amount < 0

    def as_dict(self):
        return {
            'subscriptionId': str(self.subscription.pk),
            'direction': self.direction.value,
            'packageId': str(self.subscription.package_id),
            'startDate': self.subscription.start_date.isoformat(),
            'endDate': self.subscription.end_date.isoformat(),
            'proration': self.proration.as_dict(),
            'invoiceId': self.invoice.id,
            'netAmount': str(self.net_amount),
            'isCredit': self.is_credit,
            'paymentId': str(self.payment.pk),
            'monthsUpdated': self.months.updated,
            'monthsCreated': self.months.created,
            'collection': {'collected': self.collection.collected, 'detail': self.collection.detail},
        }


# =============================================================================
# LEDGER REWRITE
# =============================================================================

def rewrite_cycle_months(student, start, end, monthly_rate, deposit):
    """
    Bring every month of the cycle [start, end) to `monthly_rate`.

    Months with no live row get a paid full row linked to `deposit`. Months
    whose live total is off by more than the rounding tolerance have one
    row adjusted in place (preferring a Stripe-sourced row). Free months
    are left alone. Nothing before start's month is read or written.

    Must be called inside a transaction.
    """
    tolerance = get_ledger_settings().rounding_tolerance
    updated, created = [], []

    for month in cycle_months(start, end):
        rows = list(
            MonthlyPayment.objects.select_for_update()
            .filter(student=student, month=month)
            .exclude(status=PaymentStatus.REJECTED)
            .order_by('created_at')
        )

        if any(row.payment_type == PaymentType.FREE for row in rows):
            continue

        if not rows:
            MonthlyPayment.objects.create(
                student=student,
                month=month,
                paid_amount=monthly_rate,
                status=PaymentStatus.PAID,
                payment_type=PaymentType.FULL,
                coverage_start=max(month_start(month), start),
                coverage_end=month_end(month),
                deposit=deposit,
                source=PaymentSource.STRIPE,
                provider_reference=deposit.provider_reference,
            )
            created.append(month)
            continue

        total = sum(row.paid_amount for row in rows)
        if abs(Decimal(total - monthly_rate)) <= tolerance:
            continue

        primary = next((row for row in rows if row.source == PaymentSource.STRIPE), rows[-1])
        others = total - primary.paid_amount
        primary.paid_amount = max(monthly_rate - others, 0)
        primary.status = PaymentStatus.PAID
        primary.save(update_fields=['paid_amount', 'status'])
        updated.append(month)

    return MonthRewrite(updated=updated, created=created)


# =============================================================================
# LOOKUPS
# =============================================================================

def _get_subscription(subscription_id, lock=False):
    queryset = StudentSubscription.objects.select_related('package', 'student')
    if lock:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=subscription_id)
    except (StudentSubscription.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Subscription not found.", subscription_id=str(subscription_id))


def _get_package(package_id):
    try:
        return SubscriptionPackage.objects.get(pk=package_id)
    except (SubscriptionPackage.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Package not found.", package_id=str(package_id))


# =============================================================================
# TRANSITIONS
# =============================================================================

class SubscriptionTransitionService:
    """
    Upgrades, downgrades and cancellations.

    The provider is injectable; by default Stripe is used.
    """

    def __init__(self, provider=None):
        self.provider = provider or StripeBillingProvider()

    @staticmethod
    def validate_transition(subscription, new_package, direction):
        if not subscription.can_transition:
            raise ValidationError(
                f"A {subscription.status} subscription cannot be changed.",
                status=subscription.status,
            )
        if new_package.pk == subscription.package_id:
            raise ValidationError("The subscription is already on this package.", package_id=str(new_package.pk))
        if not new_package.is_active:
            raise ValidationError(f"Package {new_package.name} is not available.", package_id=str(new_package.pk))

        currency = subscription.student.currency or get_ledger_settings().default_currency
        if new_package.currency.upper() != currency.upper():
            raise ValidationError(
                f"Package currency {new_package.currency} does not match the student's currency {currency}.",
                package_currency=new_package.currency, student_currency=currency,
            )

        actual = classify_transition(subscription.package, new_package)
        if actual != direction:
            raise ValidationError(
                f"{new_package.name} is not a {direction.value} from {subscription.package.name}.",
                current_price=str(subscription.package.price),
                current_duration=subscription.package.duration_months,
                new_price=str(new_package.price),
                new_duration=new_package.duration_months,
            )

    def upgrade(self, subscription_id, new_package_id, staff=None, transition_date=None):
        return self.transition(subscription_id, new_package_id, TransitionDirection.UPGRADE, staff, transition_date)

    def downgrade(self, subscription_id, new_package_id, staff=None, transition_date=None):
        return self.transition(subscription_id, new_package_id, TransitionDirection.DOWNGRADE, staff, transition_date)

    def transition(self, subscription_id, new_package_id, direction, staff=None, transition_date=None):
        """
        Move a subscription to another package mid-cycle.

        Returns:
            TransitionResult

        Raises:
            NotFoundError, ForbiddenError, ValidationError, ProviderError
        """
        direction = TransitionDirection(direction)
        transition_date = transition_date or get_school_today()

        subscription = _get_subscription(subscription_id)
        if staff is not None:
            staff.ensure_can_manage(subscription.student)
        new_package = _get_package(new_package_id)
        self.validate_transition(subscription, new_package, direction)
        # Settled months before the current cycle are never rewritten
        if not subscription.start_date <= transition_date < subscription.end_date:
            raise ValidationError(
                "A plan can only be changed during its current billing cycle.",
                transition_date=transition_date.isoformat(),
                start_date=subscription.start_date.isoformat(),
                end_date=subscription.end_date.isoformat(),
            )

        current = subscription.package
        proration = calculate_proration(
            current.price,
            current.duration_months,
            new_package.price,
            new_package.duration_months,
            subscription.start_date,
            subscription.end_date,
            transition_date,
            average_days_per_month=get_ledger_settings().average_days_per_month,
        )

        # Provider first; nothing local is written if any of this fails
        remote = self.provider.retrieve_subscription(subscription.external_subscription_id)
        self.provider.swap_plan(remote, new_package, direction.value)
        invoice = self.provider.create_proration_invoice(
            remote,
            proration.credit_amount,
            proration.new_plan_charge,
            new_package.currency,
            direction.value,
            f"{direction.value.title()} from {current.name} to {new_package.name}",
        )
        collection = self.provider.collect_invoice(invoice, remote.default_payment_method)

        net_amount = invoice.total
        if direction == TransitionDirection.UPGRADE:
            net_amount = max(net_amount, Decimal('0.00'))

        with transaction.atomic():
            subscription = _get_subscription(subscription.pk, lock=True)
            student = Student.objects.select_for_update().get(pk=subscription.student_id)
            previous_package = subscription.package

            start, end = new_cycle(transition_date, new_package.duration_months)
            subscription.package = new_package
            subscription.start_date = start
            subscription.end_date = end
            subscription.next_billing_date = end
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.save()

            payment = self._record_settlement(
                subscription, direction, previous_package, new_package, proration, invoice, net_amount, collection
            )
            months = rewrite_cycle_months(student, start, end, proration.new_monthly_rate, payment)

            log_financial_activity(
                'SUBSCRIPTION_TRANSITION',
                target_object=subscription,
                amount=net_amount,
                currency=new_package.currency,
                student=student,
                old_values={'package_id': str(previous_package.pk), 'price': str(previous_package.price)},
                new_values={'package_id': str(new_package.pk), 'price': str(new_package.price),
                            'start_date': start.isoformat(), 'end_date': end.isoformat()},
                risk_level='MEDIUM',
                additional_data={'invoice_id': invoice.id, 'months_updated': months.updated,
                                 'months_created': months.created},
            )

        logger.info(
            f"{direction.value.title()} of subscription {subscription.external_subscription_id} "
            f"{previous_package.name} -> {new_package.name}: net {net_amount} {new_package.currency}, "
            f"{len(months.updated)} month(s) updated, {len(months.created)} created"
        )

        return TransitionResult(
            subscription=subscription,
            direction=direction,
            proration=proration,
            invoice=invoice,
            net_amount=net_amount,
            payment=payment,
            months=months,
            collection=collection,
        )

    @staticmethod
    def _record_settlement(subscription, direction, previous_package, new_package, proration, invoice,
                           net_amount, collection):
        """The payment record for the transition, tagged as credit or charge."""
        is_credit = net_amount < 0
        amount = round_to_currency(abs(net_amount))
        currency = new_package.currency

        if is_credit:
            reason = (f"CREDIT: {direction.value} from {previous_package.name} to {new_package.name}, "
                      f"{amount} {currency} credited for unused time")
        else:
            reason = (f"CHARGE: {direction.value} from {previous_package.name} to {new_package.name}, "
                      f"{amount} {currency} charged")

        return Deposit.objects.create(
            student_id=subscription.student_id,
            amount=amount,
            currency=currency,
            status=DepositStatus.APPROVED,
            source=PaymentSource.STRIPE,
            reason=reason[:255],
            transaction_id=f"{direction.value}-{invoice.id}",
            payment_date=get_school_today(),
            provider_reference=invoice.id,
            subscription=subscription,
            metadata={
                'type': f"{direction.value}_{'credit' if is_credit else 'charge'}",
                'invoice_id': invoice.id,
                'invoice_status': invoice.status,
                'net_amount': str(net_amount),
                'previous_package_id': str(previous_package.pk),
                'new_package_id': str(new_package.pk),
                'proration': proration.as_dict(),
                'collected': collection.collected,
            },
        )

    def cancel(self, subscription_id, staff=None):
        """Cancel at the provider (at period end), then locally."""
        subscription = _get_subscription(subscription_id)
        if staff is not None:
            staff.ensure_can_manage(subscription.student)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return subscription

        self.provider.cancel_at_period_end(subscription.external_subscription_id)

        return SubscriptionLifecycleService.set_status(
            subscription.external_subscription_id, SubscriptionStatus.CANCELLED
        )


# =============================================================================
# PROVIDER-DRIVEN LIFECYCLE
# =============================================================================

class SubscriptionLifecycleService:
    """Local updates driven by provider webhooks. All are idempotent."""

    @staticmethod
    def get_by_external_id(external_id, lock=False):
        queryset = StudentSubscription.objects.select_related('package', 'student')
        if lock:
            queryset = queryset.select_for_update()
        return queryset.filter(external_subscription_id=external_id).first()

    @staticmethod
    @transaction.atomic
    def set_status(external_id, status, end_date=None, next_billing_date=None):
        """
        Apply a provider-reported status. Returns the subscription, or None
        when it is not known locally.
        """
        status = SubscriptionStatus(status)
        subscription = SubscriptionLifecycleService.get_by_external_id(external_id, lock=True)
        if subscription is None:
            logger.warning(f"Status {status} for unknown subscription {external_id}; ignored")
            return None

        previous = subscription.status
        subscription.status = status
        if end_date:
            subscription.end_date = end_date
        if status == SubscriptionStatus.CANCELLED:
            subscription.next_billing_date = None
        elif next_billing_date:
            subscription.next_billing_date = next_billing_date
        subscription.save()

        if previous != status:
            log_financial_activity(
                'SUBSCRIPTION_STATUS',
                target_object=subscription,
                student=subscription.student,
                old_values={'status': previous},
                new_values={'status': status.value},
                is_automated=True,
            )
            logger.info(f"Subscription {external_id} {previous} -> {status}")
        return subscription

    @staticmethod
    def record_renewal(external_id, invoice_id, amount_paid, period_start, period_end):
        """
        Record a paid recurring invoice.

        Keyed by invoice id: a second delivery finds the existing payment
        and returns it unchanged. Returns (payment, created) or
        (None, False) for an unknown subscription.
        """
        with transaction.atomic():
            subscription = SubscriptionLifecycleService.get_by_external_id(external_id, lock=True)
            if subscription is None:
                logger.warning(f"Renewal invoice {invoice_id} for unknown subscription {external_id}; ignored")
                return None, False

            existing = Deposit.objects.filter(transaction_id=invoice_id).first()
            if existing is not None:
                logger.info(f"Renewal invoice {invoice_id} already recorded")
                return existing, False

            student = Student.objects.select_for_update().get(pk=subscription.student_id)
            package = subscription.package

            start = period_start or subscription.end_date
            end = period_end or new_cycle(start, package.duration_months)[1]

            payment = Deposit.objects.create(
                student=student,
                amount=round_to_currency(amount_paid),
                currency=package.currency,
                status=DepositStatus.APPROVED,
                source=PaymentSource.STRIPE,
                reason=f"Subscription renewal: {package.name}",
                transaction_id=invoice_id,
                payment_date=get_school_today(),
                provider_reference=invoice_id,
                subscription=subscription,
                metadata={'type': 'renewal', 'invoice_id': invoice_id,
                          'period_start': start.isoformat(), 'period_end': end.isoformat()},
            )

            subscription.start_date = start
            subscription.end_date = end
            subscription.next_billing_date = end
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.save()

            monthly_rate = round_whole(Decimal(str(package.price)) / package.duration_months)
            months = rewrite_cycle_months(student, start, end, monthly_rate, payment)

            log_financial_activity(
                'SUBSCRIPTION_RENEWAL',
                target_object=subscription,
                amount=payment.amount,
                currency=payment.currency,
                student=student,
                additional_data={'invoice_id': invoice_id, 'months_created': months.created,
                                 'months_updated': months.updated},
                is_automated=True,
            )

        logger.info(f"Recorded renewal {invoice_id} for subscription {external_id}: {payment.amount} {payment.currency}")
        return payment, True
