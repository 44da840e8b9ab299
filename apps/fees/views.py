# fees/views.py

"""
JSON endpoints for monthly payments and deposits.

    GET/POST/PUT/DELETE         /payments/monthly
    GET/POST/PUT/PATCH/DELETE   /payments/deposit
"""

import logging

from django.views.decorators.http import require_http_methods

from fees.api import api_view, bind_form, parse_json_body, success_response
from fees.conf import get_ledger_settings
from fees.exceptions import ValidationError
from fees.forms import (
    DEPOSIT_FIELDS, MONTHLY_PAYMENT_FIELDS,
    DepositForm, DepositStatusForm, DepositUpdateForm,
    MonthlyPaymentForm, MonthlyPaymentUpdateForm,
)
from fees.services import DepositService, LedgerWriter
from fees.utils import serialize_deposit, serialize_monthly_payment

logger = logging.getLogger(__name__)


def _query_param(request, *names):
    for name in names:
        value = request.GET.get(name, '').strip()
        if value:
            return value
    raise ValidationError(f"{names[0]} is required.")


def _student_currency(student):
    return student.currency or get_ledger_settings().default_currency


# =============================================================================
# MONTHLY PAYMENTS
# =============================================================================

@require_http_methods(["GET", "POST", "PUT", "DELETE"])
@api_view()
def monthly_payments(request):
    handlers = {
        'GET': _list_monthly_payments,
        'POST': _record_monthly_payment,
        'PUT': _update_monthly_payment,
        'DELETE': _delete_monthly_payment,
    }
    return handlers[request.method](request)


def _list_monthly_payments(request):
    student_id = _query_param(request, 'studentId')
    student, rows = LedgerWriter.list_payments(student_id, staff=request.staff)
    currency = _student_currency(student)
    return success_response({
        'studentId': str(student.pk),
        'currency': currency,
        'payments': [serialize_monthly_payment(row, currency) for row in rows],
    })


def _record_monthly_payment(request):
    data = bind_form(MonthlyPaymentForm, parse_json_body(request), MONTHLY_PAYMENT_FIELDS)

    result = LedgerWriter.record_payment(
        data['student_id'],
        data['month'],
        data['paid_amount'],
        data['payment_type'],
        data['payment_status'],
        staff=request.staff,
        free_month_reason=data['free_month_reason'],
        legacy_paid_through=data['legacy_paid_through'],
        ignore_historical_unpaid=data['ignore_historical_unpaid'],
    )

    payment = result.payment
    return success_response({
        'message': f"Payment recorded for {payment.month}.",
        'payment': serialize_monthly_payment(payment, _student_currency(payment.student)),
        'commission': result.commission.as_dict(),
    }, status=201)


def _update_monthly_payment(request):
    body = parse_json_body(request)
    data = bind_form(MonthlyPaymentUpdateForm, body, MONTHLY_PAYMENT_FIELDS)

    reason_supplied = 'free_month_reason' in body or 'freeMonthReason' in body
    result = LedgerWriter.update_payment(
        data['payment_id'],
        staff=request.staff,
        paid_amount=data['paid_amount'],
        status=data['payment_status'],
        payment_type=data['payment_type'],
        free_month_reason=data['free_month_reason'] if reason_supplied else None,
    )

    payment = result.payment
    return success_response({
        'message': "Payment updated.",
        'payment': serialize_monthly_payment(payment, _student_currency(payment.student)),
        'commission': result.commission.as_dict(),
    })


def _delete_monthly_payment(request):
    payment_id = _query_param(request, 'paymentId', 'id')
    snapshot = LedgerWriter.delete_payment(payment_id, staff=request.staff)
    return success_response({'message': "Payment deleted.", 'paymentId': payment_id, 'deleted': snapshot})


# =============================================================================
# DEPOSITS
# =============================================================================

@require_http_methods(["GET", "POST", "PUT", "PATCH", "DELETE"])
@api_view()
def deposits(request):
    handlers = {
        'GET': _list_deposits,
        'POST': _record_deposit,
        'PUT': _set_deposit_status,
        'PATCH': _update_deposit,
        'DELETE': _delete_deposit,
    }
    return handlers[request.method](request)


def _list_deposits(request):
    student_id = _query_param(request, 'studentId')
    student, rows = DepositService.list_deposits(student_id, staff=request.staff)
    return success_response({
        'studentId': str(student.pk),
        'currency': _student_currency(student),
        'deposits': [serialize_deposit(row, linked_months=row.linked_months) for row in rows],
    })


def _record_deposit(request):
    data = bind_form(DepositForm, parse_json_body(request), DEPOSIT_FIELDS)

    result = DepositService.record_deposit(
        data['student_id'],
        data['amount'],
        staff=request.staff,
        reason=data['reason'],
        transaction_id=data['transaction_id'],
        status=data['status'],
        payment_date=data['payment_date'],
        currency=data['currency'] or None,
    )
    return success_response({
        'message': "Deposit recorded.",
        'deposit': serialize_deposit(result.deposit),
        'autoApply': result.auto_apply.as_dict(),
    }, status=201)


def _set_deposit_status(request):
    data = bind_form(DepositStatusForm, parse_json_body(request), DEPOSIT_FIELDS)

    result = DepositService.set_status(
        data['deposit_id'],
        data['status'],
        staff=request.staff,
        reason=data['reason'] or None,
    )
    return success_response({
        'message': f"Deposit {result.deposit.status}.",
        'deposit': serialize_deposit(result.deposit),
        'autoApply': result.auto_apply.as_dict(),
    })


def _update_deposit(request):
    body = parse_json_body(request)
    data = bind_form(DepositUpdateForm, body, DEPOSIT_FIELDS)

    result = DepositService.update_deposit(
        data['deposit_id'],
        staff=request.staff,
        amount=data['amount'],
        reason=data['reason'] if 'reason' in body else None,
        transaction_id=data['transaction_id'] or None,
        payment_date=data['payment_date'],
        status=data['status'],
    )
    return success_response({
        'message': "Deposit updated.",
        'deposit': serialize_deposit(result.deposit),
        'autoApply': result.auto_apply.as_dict(),
    })


def _delete_deposit(request):
    deposit_id = _query_param(request, 'depositId', 'id')
    transaction_id = DepositService.delete_deposit(deposit_id, staff=request.staff)
    return success_response({'message': "Deposit deleted.", 'depositId': deposit_id, 'transactionId': transaction_id})
