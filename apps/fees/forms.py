# fees/forms.py

"""
Input forms for the payment endpoints.

The forms only shape and type-check the JSON payload; business rules
(sequencing, expected amounts, immutability) live in fees.services.
"""

from django import forms

from fees.exceptions import LedgerError
from fees.models import DepositStatus, PaymentStatus, PaymentType
from fees.schedule import normalize_month


def _clean_with(parser, value):
    """Run a ledger parser and re-raise its error as a form error."""
    try:
        return parser(value)
    except LedgerError as exc:
        raise forms.ValidationError(exc.message)


# Wire (camelCase) key -> form field
MONTHLY_PAYMENT_FIELDS = {
    'studentId': 'student_id',
    'paymentId': 'payment_id',
    'paidAmount': 'paid_amount',
    'paymentStatus': 'payment_status',
    'paymentType': 'payment_type',
    'freeMonthReason': 'free_month_reason',
    'legacyPaidThrough': 'legacy_paid_through',
    'ignoreHistoricalUnpaid': 'ignore_historical_unpaid',
}

DEPOSIT_FIELDS = {
    'studentId': 'student_id',
    'paymentId': 'deposit_id',
    'depositId': 'deposit_id',
    'transactionId': 'transaction_id',
    'paymentDate': 'payment_date',
}


# =============================================================================
# MONTHLY PAYMENT FORMS
# =============================================================================

class MonthlyPaymentForm(forms.Form):
    student_id = forms.UUIDField()
    month = forms.CharField(max_length=10)
    paid_amount = forms.DecimalField(required=False, max_digits=14, decimal_places=2)
    payment_status = forms.CharField(max_length=20)
    payment_type = forms.CharField(max_length=20)
    free_month_reason = forms.CharField(required=False, max_length=255)
    legacy_paid_through = forms.CharField(required=False, max_length=10)
    ignore_historical_unpaid = forms.BooleanField(required=False)

    def clean_month(self):
        return _clean_with(normalize_month, self.cleaned_data['month'])

    def clean_payment_status(self):
        return _clean_with(PaymentStatus.parse, self.cleaned_data['payment_status'])

    def clean_payment_type(self):
        return _clean_with(PaymentType.parse, self.cleaned_data['payment_type'])

    def clean_legacy_paid_through(self):
        value = self.cleaned_data.get('legacy_paid_through')
        return _clean_with(normalize_month, value) if value else None

    def clean(self):
        cleaned = super().clean()
        if cleaned.get('payment_type') != PaymentType.FREE and cleaned.get('paid_amount') is None:
            if 'payment_type' in cleaned:
                self.add_error('paid_amount', "Paid amount is required.")
        return cleaned


class MonthlyPaymentUpdateForm(forms.Form):
    payment_id = forms.UUIDField()
    paid_amount = forms.DecimalField(required=False, max_digits=14, decimal_places=2)
    payment_status = forms.CharField(required=False, max_length=20)
    payment_type = forms.CharField(required=False, max_length=20)
    free_month_reason = forms.CharField(required=False, max_length=255)

    def clean_payment_status(self):
        value = self.cleaned_data.get('payment_status')
        return _clean_with(PaymentStatus.parse, value) if value else None

    def clean_payment_type(self):
        value = self.cleaned_data.get('payment_type')
        return _clean_with(PaymentType.parse, value) if value else None


# =============================================================================
# DEPOSIT FORMS
# =============================================================================

class DepositForm(forms.Form):
    student_id = forms.UUIDField()
    amount = forms.DecimalField(max_digits=14, decimal_places=2)
    reason = forms.CharField(required=False, max_length=255)
    transaction_id = forms.CharField(required=False, max_length=120)
    payment_date = forms.DateField(required=False)
    status = forms.CharField(required=False, max_length=20)
    currency = forms.CharField(required=False, max_length=3)

    def clean_status(self):
        value = self.cleaned_data.get('status')
        return _clean_with(DepositStatus.parse, value) if value else DepositStatus.PENDING


class DepositStatusForm(forms.Form):
    deposit_id = forms.UUIDField()
    status = forms.CharField(max_length=20)
    reason = forms.CharField(required=False, max_length=255)

    def clean_status(self):
        return _clean_with(DepositStatus.parse, self.cleaned_data['status'])


class DepositUpdateForm(forms.Form):
    deposit_id = forms.UUIDField()
    amount = forms.DecimalField(required=False, max_digits=14, decimal_places=2)
    reason = forms.CharField(required=False, max_length=255)
    transaction_id = forms.CharField(required=False, max_length=120)
    payment_date = forms.DateField(required=False)
    status = forms.CharField(required=False, max_length=20)

    def clean_status(self):
        value = self.cleaned_data.get('status')
        return _clean_with(DepositStatus.parse, value) if value else None
