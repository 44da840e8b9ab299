# fees/models.py

"""
Tuition ledger models.

- MonthlyPayment: one ledger row of money recorded against a student-month
- Deposit: a lump payment held until applied to months
- ControllerEarning: commission owed to a student's controller
- PaymentCheckout: a one-off gateway payment awaiting its webhook
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models

from fees.exceptions import ValidationError
from students.models import Student
from utils.models import BaseModel

import logging

logger = logging.getLogger(__name__)


# =============================================================================
# CHOICES
# =============================================================================

def _parse_choice(choices, value, label, aliases=None):
    """
    Strictly map wire input onto a TextChoices member.

    Matching is case-insensitive; unknown values raise ValidationError
    rather than falling through to a default.
    """
    if isinstance(value, choices):
        return value
    key = str(value or '').strip().lower()
    key = (aliases or {}).get(key, key)
    try:
        return choices(key)
    except ValueError:
        allowed = ', '.join(choices.values)
        raise ValidationError(f"Invalid {label} '{value}'. Allowed: {allowed}.", **{label: value})


class PaymentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PAID = 'paid', 'Paid'
    REJECTED = 'rejected', 'Rejected'

    @classmethod
    def parse(cls, value):
        return _parse_choice(cls, value, 'payment_status')


class PaymentType(models.TextChoices):
    FULL = 'full', 'Full'
    PARTIAL = 'partial', 'Partial'
    PRIZE_PARTIAL = 'prizepartial', 'Prize Partial'
    FREE = 'free', 'Free'

    @classmethod
    def parse(cls, value):
        return _parse_choice(cls, value, 'payment_type', aliases={
            'prize-partial': 'prizepartial',
            'prize_partial': 'prizepartial',
            # Older imports stored free months as "prize"
            'prize': 'free',
        })


class DepositStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'

    @classmethod
    def parse(cls, value):
        return _parse_choice(cls, value, 'status')


class PaymentSource(models.TextChoices):
    MANUAL = 'manual', 'Manual'
    STRIPE = 'stripe', 'Stripe'
    CHAPA = 'chapa', 'Chapa'

    @classmethod
    def parse(cls, value):
        return _parse_choice(cls, value, 'source')


GATEWAY_SOURCES = frozenset({PaymentSource.STRIPE, PaymentSource.CHAPA})


class CheckoutIntent(models.TextChoices):
    DEPOSIT = 'deposit', 'Deposit'
    MONTHLY = 'monthly', 'Monthly Payment'


class CheckoutStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'


# =============================================================================
# DEPOSIT
# =============================================================================

class Deposit(BaseModel):
    """
    Money received from or for a student, not yet tied to a month.

    Approved deposits and anything that arrived through a gateway are
    immutable; pending or rejected manual deposits can be edited until a
    ledger row links to them.
    """

    student = models.ForeignKey(
        Student,
        verbose_name="Student",
        on_delete=models.CASCADE,
        related_name='deposits'
    )
    amount = models.DecimalField(
        "Amount",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    currency = models.CharField("Currency", max_length=3)
    status = models.CharField(
        "Status",
        max_length=10,
        choices=DepositStatus.choices,
        default=DepositStatus.PENDING,
        db_index=True
    )
    source = models.CharField(
        "Source",
        max_length=10,
        choices=PaymentSource.choices,
        default=PaymentSource.MANUAL,
        db_index=True
    )
    reason = models.CharField("Reason", max_length=255, default='deposit')
    transaction_id = models.CharField("Transaction ID", max_length=120, unique=True)
    payment_date = models.DateField("Payment Date")
    provider_reference = models.CharField("Provider Reference", max_length=120, blank=True)
    subscription = models.ForeignKey(
        'subscriptions.StudentSubscription',
        verbose_name="Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payments'
    )
    metadata = models.JSONField("Metadata", default=dict, blank=True)

    class Meta:
        verbose_name = "Deposit"
        verbose_name_plural = "Deposits"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['student', 'status']),
        ]

    def __str__(self):
        return f"{self.transaction_id} - {self.amount} {self.currency} ({self.status})"

    @property
    def is_gateway(self):
        return PaymentSource(self.source) in GATEWAY_SOURCES

    @property
    def is_immutable(self):
        return self.status == DepositStatus.APPROVED or self.is_gateway

    @property
    def is_credit(self):
        return self.reason.startswith('CREDIT:')


# =============================================================================
# MONTHLY PAYMENT (LEDGER ROW)
# =============================================================================

class MonthlyPayment(BaseModel):
    """
    Money recorded against one student-month.

    A month may hold several rows, for example a prize-partial award plus
    the partial payment that completes it. Amounts are whole currency units.
    """

    student = models.ForeignKey(
        Student,
        verbose_name="Student",
        on_delete=models.CASCADE,
        related_name='monthly_payments'
    )
    month = models.CharField("Month", max_length=7, db_index=True, help_text="YYYY-MM")
    paid_amount = models.PositiveIntegerField("Paid Amount", default=0)
    status = models.CharField(
        "Status",
        max_length=10,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    payment_type = models.CharField("Payment Type", max_length=15, choices=PaymentType.choices)
    coverage_start = models.DateField("Coverage Start")
    coverage_end = models.DateField("Coverage End")
    free_month_reason = models.CharField("Free Month Reason", max_length=255, blank=True)
    deposit = models.ForeignKey(
        Deposit,
        verbose_name="Linked Deposit",
        on_delete=models.RESTRICT,
        null=True,
        blank=True,
        related_name='monthly_payments'
    )
    source = models.CharField(
        "Source",
        max_length=10,
        choices=PaymentSource.choices,
        default=PaymentSource.MANUAL
    )
    provider_reference = models.CharField("Provider Reference", max_length=120, blank=True)

    class Meta:
        verbose_name = "Monthly Payment"
        verbose_name_plural = "Monthly Payments"
        ordering = ['month', 'created_at']
        indexes = [
            models.Index(fields=['student', 'month']),
        ]

    def __str__(self):
        return f"{self.student} {self.month}: {self.paid_amount} ({self.payment_type}, {self.status})"

    @property
    def counts_toward_total(self):
        return self.status != PaymentStatus.REJECTED

    def snapshot(self):
        """Field values that matter for history comparisons and audit entries."""
        return {
            'month': self.month,
            'paid_amount': self.paid_amount,
            'status': self.status,
            'payment_type': self.payment_type,
            'coverage_start': self.coverage_start.isoformat() if self.coverage_start else None,
            'coverage_end': self.coverage_end.isoformat() if self.coverage_end else None,
            'free_month_reason': self.free_month_reason,
            'deposit_id': str(self.deposit_id) if self.deposit_id else None,
            'source': self.source,
        }


# =============================================================================
# COMMISSION
# =============================================================================

class ControllerEarning(BaseModel):
    """
    Commission owed to a controller for a paid monthly payment.

    One per ledger row: the OneToOne key makes repeated awards a no-op.
    """

    controller_code = models.CharField("Controller Code", max_length=150, db_index=True)
    student = models.ForeignKey(
        Student,
        verbose_name="Student",
        on_delete=models.CASCADE,
        related_name='controller_earnings'
    )
    monthly_payment = models.OneToOneField(
        MonthlyPayment,
        verbose_name="Monthly Payment",
        on_delete=models.CASCADE,
        related_name='commission'
    )
    amount = models.DecimalField("Amount", max_digits=12, decimal_places=2)
    rate = models.DecimalField("Rate", max_digits=5, decimal_places=4)

    class Meta:
        verbose_name = "Controller Earning"
        verbose_name_plural = "Controller Earnings"
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.controller_code}: {self.amount} for {self.monthly_payment_id}"


# =============================================================================
# GATEWAY CHECKOUT
# =============================================================================

class PaymentCheckout(BaseModel):
    """
    A one-off gateway payment started by a student, finalized by webhook.

    `tx_ref` is the key both gateways echo back, so redelivered webhooks
    find the same row.
    """

    tx_ref = models.CharField("Transaction Reference", max_length=120, unique=True)
    student = models.ForeignKey(
        Student,
        verbose_name="Student",
        on_delete=models.CASCADE,
        related_name='checkouts'
    )
    amount = models.DecimalField(
        "Amount",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    currency = models.CharField("Currency", max_length=3)
    provider = models.CharField("Provider", max_length=10, choices=PaymentSource.choices)
    intent = models.CharField("Intent", max_length=10, choices=CheckoutIntent.choices, default=CheckoutIntent.DEPOSIT)
    months = models.JSONField("Months", default=list, blank=True)
    status = models.CharField(
        "Status",
        max_length=10,
        choices=CheckoutStatus.choices,
        default=CheckoutStatus.PENDING,
        db_index=True
    )
    deposit = models.OneToOneField(
        Deposit,
        verbose_name="Deposit",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='checkout'
    )
    provider_reference = models.CharField("Provider Reference", max_length=120, blank=True)
    failure_reason = models.CharField("Failure Reason", max_length=255, blank=True)

    class Meta:
        verbose_name = "Payment Checkout"
        verbose_name_plural = "Payment Checkouts"
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.tx_ref} ({self.provider}, {self.status})"
