# fees/utils.py

"""
Reference generators and JSON serializers for the fees app.
"""

import secrets

from django.utils import timezone

from fees.models import PaymentType


# =============================================================================
# REFERENCE GENERATION
# =============================================================================

def generate_deposit_reference():
    """
    Transaction id for a deposit entered without one.

    Format: DEP-20250301143005-4F1A2B
    """
    return f"DEP-{timezone.now():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def generate_checkout_reference(provider):
    """
    tx_ref sent to a gateway and echoed back on its webhook.

    Format: CHAPA-20250301143005-9C0D1E2F
    """
    return f"{str(provider).upper()}-{timezone.now():%Y%m%d%H%M%S}-{secrets.token_hex(4).upper()}"


# =============================================================================
# SERIALIZERS
# =============================================================================

def serialize_monthly_payment(payment, currency):
    # Legacy rows imported with type "prize" are free months
    payment_type = PaymentType.FREE.value if payment.payment_type == 'prize' else payment.payment_type
    return {
        'id': str(payment.id),
        'studentId': str(payment.student_id),
        'month': payment.month,
        'paid_amount': payment.paid_amount,
        'payment_status': payment.status,
        'payment_type': payment_type,
        'start_date': payment.coverage_start.isoformat(),
        'end_date': payment.coverage_end.isoformat(),
        'free_month_reason': payment.free_month_reason or None,
        'paymentId': str(payment.deposit_id) if payment.deposit_id else None,
        'source': payment.source,
        'currency': currency,
        'created_at': payment.created_at.isoformat() if payment.created_at else None,
    }


def serialize_deposit(deposit, linked_months=None):
    data = {
        'id': str(deposit.id),
        'studentId': str(deposit.student_id),
        'amount': str(deposit.amount),
        'currency': deposit.currency,
        'status': deposit.status,
        'source': deposit.source,
        'reason': deposit.reason,
        'transactionId': deposit.transaction_id,
        'paymentDate': deposit.payment_date.isoformat() if deposit.payment_date else None,
        'createdAt': deposit.created_at.isoformat() if deposit.created_at else None,
        'immutable': deposit.is_immutable,
    }
    if linked_months is not None:
        data['linkedMonths'] = linked_months
    return data
