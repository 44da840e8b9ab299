# fees/exceptions.py

"""
Error taxonomy for the tuition ledger.

Every business-rule failure is a LedgerError carrying an HTTP status, a
machine-readable code and enough detail (expected vs. actual, offending
month) for the caller to correct the request. The api_view decorator turns
these into JSON responses.
"""


class LedgerError(Exception):
    status_code = 400
    code = 'ledger_error'
    default_message = 'The request could not be processed.'

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        payload = {
            'success': False,
            'error': self.code,
            'message': self.message,
        }
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(LedgerError):
    code = 'validation_error'
    default_message = 'Invalid input.'


class UnauthorizedError(LedgerError):
    status_code = 401
    code = 'unauthorized'
    default_message = 'Authentication required.'


class ForbiddenError(LedgerError):
    status_code = 403
    code = 'forbidden'
    default_message = 'You do not have permission to perform this action.'


class NotFoundError(LedgerError):
    status_code = 404
    code = 'not_found'
    default_message = 'Not found.'


class UnpaidHistoryError(LedgerError):
    """
    An earlier month is not covered, so this payment would skip it.

    `unpaid_months` holds one dict per uncovered month, oldest first:
    {month, expected, paid, shortfall}.
    """
    code = 'unpaid_history'

    def __init__(self, unpaid_months):
        self.unpaid_months = list(unpaid_months)
        first = self.unpaid_months[0]
        message = (
            f"Month {first['month']} is not fully paid "
            f"({first['paid']} of {first['expected']}, short by {first['shortfall']}). "
            f"Settle earlier months first."
        )
        super().__init__(message, month=first['month'], shortfall=first['shortfall'],
                         unpaid_months=self.unpaid_months)


class AmountExceedsExpectedError(LedgerError):
    code = 'amount_exceeds_expected'

    def __init__(self, month, expected, existing_total, requested):
        self.month = month
        self.expected = expected
        self.existing_total = existing_total
        self.requested = requested
        remaining = max(expected - existing_total, 0)
        message = (
            f"Payment of {requested} for {month} exceeds the expected amount. "
            f"Expected {expected}, already recorded {existing_total}, at most {remaining} can be added."
        )
        super().__init__(message, month=month, expected=expected, existing_total=existing_total,
                         requested=requested, remaining=remaining)


class MonthAlreadyFreeError(LedgerError):
    code = 'month_already_free'

    def __init__(self, month):
        self.month = month
        super().__init__(f"Month {month} is already marked free; no further payments can be recorded.",
                         month=month)


class ImmutableError(LedgerError):
    code = 'immutable'
    default_message = 'Approved or gateway deposits cannot be changed.'


class InUseError(LedgerError):
    code = 'in_use'
    default_message = 'This deposit is already applied to monthly payments.'


class ProviderError(LedgerError):
    """
    The billing provider rejected or failed a call.

    Raised before any local write is committed. `retryable` is True for
    network and rate-limit failures.
    """
    status_code = 500
    code = 'provider_error'
    default_message = 'The billing provider request failed.'

    def __init__(self, message=None, retryable=False, **details):
        self.retryable = retryable
        super().__init__(message, retryable=retryable, **details)


class WebhookSignatureError(LedgerError):
    code = 'invalid_signature'
    default_message = 'Webhook signature verification failed.'
