# subscriptions/models.py

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models

from students.models import Student
from utils.models import BaseModel

import logging

logger = logging.getLogger(__name__)


class SubscriptionStatus(models.TextChoices):
    TRIALING = 'trialing', 'Trialing'
    ACTIVE = 'active', 'Active'
    PAST_DUE = 'past_due', 'Past Due'
    CANCELLED = 'cancelled', 'Cancelled'


# Plan changes are only allowed from these states
TRANSITIONABLE_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})


# =============================================================================
# PACKAGE
# =============================================================================

class SubscriptionPackage(BaseModel):
    """A billing plan: a price for a number of months."""

    name = models.CharField("Name", max_length=120)
    description = models.TextField("Description", blank=True)
    price = models.DecimalField(
        "Price",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    duration_months = models.PositiveSmallIntegerField("Duration (months)", validators=[MinValueValidator(1)])
    currency = models.CharField("Currency", max_length=3)
    is_active = models.BooleanField("Active", default=True)
    provider_product_id = models.CharField(
        "Provider Product ID",
        max_length=120,
        blank=True,
        help_text="Billing-provider product the package's prices are created under"
    )

    class Meta:
        verbose_name = "Subscription Package"
        verbose_name_plural = "Subscription Packages"
        ordering = ['price', 'duration_months']

    def __str__(self):
        return f"{self.name} ({self.price} {self.currency} / {self.duration_months} mo)"


# =============================================================================
# SUBSCRIPTION
# =============================================================================

class StudentSubscription(BaseModel):
    """
    A student's recurring plan, mirrored from the billing provider.

    The provider owns billing; this row is the local record of what the
    provider last confirmed.
    """

    student = models.ForeignKey(
        Student,
        verbose_name="Student",
        on_delete=models.CASCADE,
        related_name='subscriptions'
    )
    package = models.ForeignKey(
        SubscriptionPackage,
        verbose_name="Package",
        on_delete=models.PROTECT,
        related_name='subscriptions'
    )
    status = models.CharField(
        "Status",
        max_length=10,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
        db_index=True
    )
    start_date = models.DateField("Start Date")
    end_date = models.DateField("End Date")
    next_billing_date = models.DateField("Next Billing Date", null=True, blank=True)
    external_subscription_id = models.CharField("External Subscription ID", max_length=120, unique=True)
    external_customer_id = models.CharField("External Customer ID", max_length=120, blank=True)

    class Meta:
        verbose_name = "Student Subscription"
        verbose_name_plural = "Student Subscriptions"
        ordering = ['-start_date']

    def __str__(self):
        return f"{self.student} - {self.package.name} ({self.status})"

    @property
    def can_transition(self):
        return SubscriptionStatus(self.status) in TRANSITIONABLE_STATUSES
