# students/models.py

from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models

from fees.exceptions import NotFoundError
from fees.schedule import FeeProfile
from utils.models import BaseModel

import logging

logger = logging.getLogger(__name__)


def validate_currency_code(value):
    """Reject anything that is not an ISO 4217 alpha-3 code."""
    from fees.conf import is_known_currency

    if not is_known_currency(value):
        raise ValidationError(f"{value} is not a valid ISO 4217 currency code.")


def default_currency():
    from fees.conf import get_ledger_settings
    return get_ledger_settings().default_currency


# =============================================================================
# STUDENT MODEL
# =============================================================================

class Student(BaseModel):
    """
    A billed student and the fee profile the ledger reads.

    The ledger never edits these fields; the base fee, currency and
    enrollment date are maintained by the student registry.
    """

    full_name = models.CharField("Full Name", max_length=200)
    is_active = models.BooleanField("Active", default=True)

    # -------------------------------------------------------------------------
    # FEE PROFILE
    # -------------------------------------------------------------------------

    base_monthly_fee = models.DecimalField(
        "Base Monthly Fee",
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Tuition owed per full calendar month"
    )
    currency = models.CharField(
        "Currency",
        max_length=3,
        default=default_currency,
        validators=[validate_currency_code],
        help_text="ISO 4217 code used for all of this student's payments"
    )
    enrollment_start_date = models.DateField(
        "Enrollment Start Date",
        null=True,
        blank=True,
        help_text="First day in class; the enrollment month is prorated from here"
    )

    # -------------------------------------------------------------------------
    # BILLING AGENT
    # -------------------------------------------------------------------------

    controller_code = models.CharField(
        "Controller Code",
        max_length=150,
        blank=True,
        db_index=True,
        help_text="Username of the controller who collects for this student and earns commission"
    )

    class Meta:
        verbose_name = "Student"
        verbose_name_plural = "Students"
        ordering = ['full_name']

    def __str__(self):
        return self.full_name

    @property
    def has_fee_profile(self):
        return self.base_monthly_fee is not None and self.enrollment_start_date is not None

    def get_fee_profile(self):
        """
        Return the immutable FeeProfile used by the fee schedule.

        Raises:
            NotFoundError: base fee or enrollment start date is missing.
        """
        if not self.has_fee_profile:
            raise NotFoundError(
                f"Student {self.full_name} has no fee profile (base fee and enrollment date are required).",
                student_id=str(self.pk),
            )
        return FeeProfile(
            student_id=self.pk,
            base_monthly_fee=self.base_monthly_fee,
            currency=self.currency,
            enrollment_start_date=self.enrollment_start_date,
        )
