# fees/services.py

"""
Tuition ledger operations.

- LedgerWriter: record, update and delete monthly payments
- CommissionService: one commission per paid ledger row
- DepositService: deposits and their application to unpaid months
- CheckoutService: one-off gateway payments finalized by webhook

Every multi-row write runs in a single transaction and re-reads the
student's ledger inside it with the student row locked, so two concurrent
payments for the same month cannot both pass the over-payment check.

Commission creation and deposit auto-apply are the only best-effort steps.
Their outcome is returned as a SideEffectResult instead of raising.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, transaction
from django.db.models import Count

from fees.conf import get_ledger_settings, is_known_currency
from fees.coverage import evaluate_month_coverage, paid_total
from fees.exceptions import (
    AmountExceedsExpectedError, ImmutableError, InUseError, LedgerError,
    MonthAlreadyFreeError, NotFoundError, UnpaidHistoryError, ValidationError,
)
from fees.models import (
    CheckoutIntent, CheckoutStatus, ControllerEarning, Deposit, DepositStatus,
    GATEWAY_SOURCES, MonthlyPayment, PaymentCheckout, PaymentSource, PaymentStatus, PaymentType,
)
from fees.schedule import (
    coverage_window, expected_amount, iter_months, month_of, months_before, normalize_month,
)
from fees.utils import generate_checkout_reference, generate_deposit_reference
from students.models import Student
from utils.audit import log_financial_activity
from utils.utils import get_school_today, round_to_currency, round_whole, safe_decimal

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

class SideEffectStatus(str, Enum):
    APPLIED = 'applied'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass(frozen=True)
class SideEffectResult:
    """
    Outcome of a best-effort step that never fails its parent operation.

    `degraded` is True when the step was attempted and failed, which is
    what operators watch for drift between deposits and applied months.
    """
    status: SideEffectStatus
    detail: str = ''
    data: dict = field(default_factory=dict)

    @property
    def degraded(self):
        return self.status == SideEffectStatus.FAILED

    @classmethod
    def applied(cls, detail='', **data):
        return cls(SideEffectStatus.APPLIED, detail, data)

    @classmethod
    def skipped(cls, detail='', **data):
        return cls(SideEffectStatus.SKIPPED, detail, data)

    @classmethod
    def failed(cls, detail='', **data):
        return cls(SideEffectStatus.FAILED, detail, data)

    def as_dict(self):
        return {
            'status': self.status.value,
            'degraded': self.degraded,
            'detail': self.detail,
            **self.data,
        }


@dataclass(frozen=True)
class LedgerWriteResult:
    payment: MonthlyPayment
    commission: SideEffectResult


@dataclass(frozen=True)
class DepositResult:
    deposit: Deposit
    auto_apply: SideEffectResult


@dataclass(frozen=True)
class AutoApplyResult:
    deposit: Deposit
    allocations: list
    remaining: Decimal
    already_applied: bool = False

    def as_dict(self):
        return {
            'allocations': self.allocations,
            'remaining': str(self.remaining),
            'alreadyApplied': self.already_applied,
        }


@dataclass(frozen=True)
class CheckoutResult:
    checkout: PaymentCheckout
    deposit: Deposit = None
    auto_apply: SideEffectResult = None
    already_processed: bool = False


# =============================================================================
# HELPERS
# =============================================================================

def _get_student(student_id, lock=False):
    queryset = Student.objects.select_for_update() if lock else Student.objects.all()
    try:
        return queryset.get(pk=student_id)
    except (Student.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Student not found.", student_id=str(student_id))


def _get_payment(payment_id, lock=False):
    queryset = MonthlyPayment.objects.select_related('student')
    if lock:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=payment_id)
    except (MonthlyPayment.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Payment not found.", payment_id=str(payment_id))


def _get_deposit(deposit_id, lock=False):
    queryset = Deposit.objects.select_related('student')
    if lock:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=deposit_id)
    except (Deposit.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Deposit not found.", deposit_id=str(deposit_id))


def _whole_amount(value, label='paidAmount'):
    """Non-negative whole-unit amount, rounded once half away from zero."""
    amount = safe_decimal(value)
    if amount is None:
        raise ValidationError(f"{label} must be a number.", **{label: value})
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative.", **{label: value})
    return round_whole(amount)


def _positive_money(value, label='amount'):
    amount = safe_decimal(value)
    if amount is None or amount <= 0:
        raise ValidationError(f"{label} must be a positive number.", **{label: value})
    return round_to_currency(amount)


def _rows_by_month(rows):
    grouped = defaultdict(list)
    for row in rows:
        grouped[row.month].append(row)
    return grouped


def _ensure_can_manage(staff, student):
    if staff is not None:
        staff.ensure_can_manage(student)


# =============================================================================
# LEDGER WRITER
# =============================================================================

class LedgerWriter:
    """
    Validates and persists monthly payments.

    Rules enforced on record:
    - earlier months must be covered before a non-paid payment is accepted
    - nothing more may be recorded in a month that is already free
    - non-rejected amounts in a month never exceed its expected amount
    """

    # These types may be recorded out of sequence. A partial payment is only
    # exempt for its own month, which is never among the earlier months checked.
    HISTORY_BYPASS_TYPES = frozenset({PaymentType.PRIZE_PARTIAL, PaymentType.FREE})

    @staticmethod
    def baseline_month(profile, rows, legacy_paid_through=None):
        """
        First month the sequencing check looks at: the legacy cutoff when
        given, else the earliest recorded month, else the enrollment month.
        """
        if legacy_paid_through:
            return normalize_month(legacy_paid_through)
        recorded = [row.month for row in rows]
        if recorded:
            return min(recorded)
        return profile.enrollment_month

    @staticmethod
    def find_unpaid_months(profile, rows, baseline, target_month):
        """Uncovered months from baseline up to (not including) target_month, oldest first."""
        by_month = _rows_by_month(rows)
        unpaid = []
        for month in months_before(baseline, target_month):
            expected = expected_amount(profile, month)
            if expected == 0:
                continue
            coverage = evaluate_month_coverage(month, by_month.get(month, []), expected)
            if not coverage.covered:
                unpaid.append(coverage)
        return unpaid

    @staticmethod
    def record_payment(
        student_id,
        month,
        amount,
        payment_type,
        status,
        staff=None,
        free_month_reason='',
        legacy_paid_through=None,
        ignore_historical_unpaid=False,
        source=PaymentSource.MANUAL,
        deposit=None,
        provider_reference='',
    ):
        """
        Record a monthly payment.

        Args:
            student_id: Student primary key.
            month (str): `YYYY-MM` or `YYYY-M`.
            amount: Amount paid; ignored (forced to 0) for free months.
            payment_type: full, partial, prizepartial or free.
            status: pending, paid or rejected.
            staff (StaffContext, optional): Caller. Only admins and
                registrars may use legacy_paid_through and
                ignore_historical_unpaid; for anyone else they are ignored.

        Returns:
            LedgerWriteResult

        Raises:
            ValidationError, NotFoundError, ForbiddenError,
            UnpaidHistoryError, MonthAlreadyFreeError,
            AmountExceedsExpectedError
        """
        month = normalize_month(month)
        payment_type = PaymentType.parse(payment_type)
        status = PaymentStatus.parse(status)
        source = PaymentSource.parse(source)
        requested = 0 if payment_type == PaymentType.FREE else _whole_amount(amount)

        can_override = staff is not None and staff.can_override

        with transaction.atomic():
            student = _get_student(student_id, lock=True)
            _ensure_can_manage(staff, student)
            profile = student.get_fee_profile()

            # Read inside the transaction, after the lock
            rows = list(MonthlyPayment.objects.filter(student=student))

            skip_history = (
                status == PaymentStatus.PAID
                or (can_override and ignore_historical_unpaid)
                or payment_type in LedgerWriter.HISTORY_BYPASS_TYPES
            )
            if not skip_history:
                baseline = LedgerWriter.baseline_month(
                    profile, rows, legacy_paid_through if can_override else None
                )
                unpaid = LedgerWriter.find_unpaid_months(profile, rows, baseline, month)
                if unpaid:
                    raise UnpaidHistoryError([coverage.as_dict() for coverage in unpaid])

            month_rows = [row for row in rows if row.month == month]
            if any(row.counts_toward_total and row.payment_type == PaymentType.FREE for row in month_rows):
                raise MonthAlreadyFreeError(month)

            expected = expected_amount(profile, month)
            if payment_type != PaymentType.FREE:
                existing_total = paid_total(month_rows)
                if existing_total + requested > expected:
                    raise AmountExceedsExpectedError(month, expected, existing_total, requested)

            coverage_start, coverage_end = coverage_window(profile, month)
            payment = MonthlyPayment.objects.create(
                student=student,
                month=month,
                paid_amount=requested,
                status=status,
                payment_type=payment_type,
                coverage_start=coverage_start,
                coverage_end=coverage_end,
                free_month_reason=free_month_reason or '',
                deposit=deposit,
                source=source,
                provider_reference=provider_reference or '',
            )

            logger.info(
                f"Recorded {payment_type} payment of {requested} {student.currency} "
                f"for {student.full_name} {month} ({status})"
            )

            commission = CommissionService.award_for_payment(payment, student)

        return LedgerWriteResult(payment=payment, commission=commission)

    @staticmethod
    def update_payment(payment_id, staff=None, paid_amount=None, status=None, payment_type=None,
                       free_month_reason=None):
        """
        Change fields of an existing ledger row.

        Type and status are re-validated and the month's total is re-checked
        against its expected amount, and a live row may not sit beside a free
        row of the same month. The sequencing check is not repeated.
        Moving a row to paid awards the controller commission if not yet done.
        """
        with transaction.atomic():
            payment = _get_payment(payment_id, lock=True)
            student = Student.objects.select_for_update().get(pk=payment.student_id)
            _ensure_can_manage(staff, student)

            if payment_type is not None:
                payment.payment_type = PaymentType.parse(payment_type)
            if status is not None:
                payment.status = PaymentStatus.parse(status)
            if free_month_reason is not None:
                payment.free_month_reason = free_month_reason
            if paid_amount is not None:
                payment.paid_amount = _whole_amount(paid_amount)

            if payment.payment_type == PaymentType.FREE:
                payment.paid_amount = 0
            elif payment.status != PaymentStatus.REJECTED:
                others = list(
                    MonthlyPayment.objects.filter(student=student, month=payment.month).exclude(pk=payment.pk)
                )
                if any(row.counts_toward_total and row.payment_type == PaymentType.FREE for row in others):
                    raise MonthAlreadyFreeError(payment.month)

                expected = expected_amount(student.get_fee_profile(), payment.month)
                others_total = paid_total(others)
                if others_total + payment.paid_amount > expected:
                    raise AmountExceedsExpectedError(payment.month, expected, others_total, payment.paid_amount)

            payment.save()
            logger.info(f"Updated payment {payment.pk} for {student.full_name} {payment.month}")

            commission = CommissionService.award_for_payment(payment, student)

        return LedgerWriteResult(payment=payment, commission=commission)

    @staticmethod
    @transaction.atomic
    def delete_payment(payment_id, staff=None):
        """
        Delete a ledger row regardless of status.

        Returns the deleted row's snapshot. Its commission, if any, goes
        with it.
        """
        payment = _get_payment(payment_id, lock=True)
        _ensure_can_manage(staff, payment.student)

        snapshot = payment.snapshot()
        payment.delete()
        logger.info(f"Deleted payment {payment_id} ({snapshot['month']}, {snapshot['status']})")
        return snapshot

    @staticmethod
    def list_payments(student_id, staff=None):
        """(student, rows newest month first)"""
        student = _get_student(student_id)
        _ensure_can_manage(staff, student)
        rows = MonthlyPayment.objects.filter(student=student).order_by('-month', '-created_at')
        return student, list(rows)


# =============================================================================
# COMMISSION
# =============================================================================

class CommissionService:
    """Controller commission for paid monthly payments."""

    COMMISSION_TYPES = frozenset({PaymentType.FULL, PaymentType.PARTIAL, PaymentType.PRIZE_PARTIAL})

    @staticmethod
    def award_for_payment(payment, student=None):
        """
        Create the commission for `payment` once.

        Calling this again for the same payment is a no-op. A database
        failure is logged and reported as a degraded result; the payment
        itself stays recorded.
        """
        conf = get_ledger_settings()
        student = student or payment.student

        if not conf.commissions_enabled:
            return SideEffectResult.skipped("Commission tracking is disabled.")
        if payment.status != PaymentStatus.PAID:
            return SideEffectResult.skipped("Payment is not paid.")
        if PaymentType(payment.payment_type) not in CommissionService.COMMISSION_TYPES or payment.paid_amount <= 0:
            return SideEffectResult.skipped("Payment type or amount does not earn commission.")
        if not student.controller_code:
            return SideEffectResult.skipped("Student has no controller.")

        amount = round_to_currency(Decimal(payment.paid_amount) * conf.commission_rate)

        try:
            with transaction.atomic():
                earning, created = ControllerEarning.objects.get_or_create(
                    monthly_payment=payment,
                    defaults={
                        'controller_code': student.controller_code,
                        'student': student,
                        'amount': amount,
                        'rate': conf.commission_rate,
                    },
                )
                if created:
                    log_financial_activity(
                        'COMMISSION_CREATE',
                        target_object=earning,
                        amount=earning.amount,
                        currency=student.currency,
                        student=student,
                        additional_data={'payment_id': str(payment.pk), 'controller': student.controller_code},
                    )
        except DatabaseError as exc:
            logger.warning(f"Commission for payment {payment.pk} could not be recorded: {exc}")
            return SideEffectResult.failed(f"Commission could not be recorded: {exc}")

        data = {
            'commissionId': str(earning.pk),
            'controller': earning.controller_code,
            'amount': str(earning.amount),
        }
        if not created:
            return SideEffectResult.skipped("Commission already recorded.", **data)

        logger.info(f"Commission {earning.amount} recorded for {earning.controller_code} on payment {payment.pk}")
        return SideEffectResult.applied(**data)


# =============================================================================
# DEPOSIT ACCOUNT
# =============================================================================

class DepositService:
    """
    Deposits held against a student and their application to months.

    Approved deposits are applied oldest uncovered month first, filling
    each month up to its expected amount.
    """

    @staticmethod
    def record_deposit(
        student_id,
        amount,
        staff=None,
        reason=None,
        transaction_id=None,
        status=DepositStatus.PENDING,
        payment_date=None,
        currency=None,
        source=PaymentSource.MANUAL,
        provider_reference='',
        subscription=None,
        metadata=None,
    ):
        """
        Record a deposit. One recorded as approved is auto-applied at once.

        Returns:
            DepositResult
        """
        amount = _positive_money(amount)
        status = DepositStatus.parse(status)
        if status == DepositStatus.REJECTED:
            raise ValidationError("A new deposit must be pending or approved.", status=status.value)
        source = PaymentSource.parse(source)

        transaction_id = (transaction_id or '').strip() or generate_deposit_reference()

        with transaction.atomic():
            student = _get_student(student_id)
            _ensure_can_manage(staff, student)

            currency = (currency or student.currency or get_ledger_settings().default_currency).upper()
            if not is_known_currency(currency):
                raise ValidationError(f"Unknown currency {currency}.", currency=currency)

            if Deposit.objects.filter(transaction_id=transaction_id).exists():
                raise ValidationError("This transaction ID is already recorded.", transactionId=transaction_id)

            deposit = Deposit.objects.create(
                student=student,
                amount=amount,
                currency=currency,
                status=status,
                source=source,
                reason=(reason or '').strip() or 'deposit',
                transaction_id=transaction_id,
                payment_date=payment_date or get_school_today(),
                provider_reference=provider_reference or '',
                subscription=subscription,
                metadata=metadata or {},
            )

        logger.info(f"Recorded {status} deposit {deposit.transaction_id} of {amount} {currency} for {student.full_name}")

        if status == DepositStatus.APPROVED:
            return DepositResult(deposit, DepositService.apply_best_effort(deposit))
        return DepositResult(deposit, SideEffectResult.skipped("Deposit is pending approval."))

    @staticmethod
    def set_status(deposit_id, status, staff=None, reason=None):
        """
        Approve or reject a deposit.

        Approval triggers auto-apply; if that fails the approval still
        stands and the result reports the failure.
        """
        status = DepositStatus.parse(status)
        if status == DepositStatus.PENDING:
            raise ValidationError("Status must be approved or rejected.", status=status.value)

        with transaction.atomic():
            deposit = _get_deposit(deposit_id, lock=True)
            _ensure_can_manage(staff, deposit.student)

            if deposit.status == DepositStatus.APPROVED and status != DepositStatus.APPROVED:
                raise ImmutableError("An approved deposit cannot be rejected.", deposit_id=str(deposit.pk))

            previous = deposit.status
            deposit.status = status
            if reason:
                deposit.reason = reason
            deposit.save()

            if previous != status:
                log_financial_activity(
                    'DEPOSIT_STATUS',
                    target_object=deposit,
                    amount=deposit.amount,
                    currency=deposit.currency,
                    student=deposit.student,
                    old_values={'status': previous},
                    new_values={'status': status.value},
                    risk_level='MEDIUM',
                )

        logger.info(f"Deposit {deposit.transaction_id} {previous} -> {status}")

        if status == DepositStatus.APPROVED:
            return DepositResult(deposit, DepositService.apply_best_effort(deposit))
        return DepositResult(deposit, SideEffectResult.skipped("Deposit was rejected."))

    @staticmethod
    def apply_best_effort(deposit, months=None):
        """Run auto_apply_to_months, converting failure into a degraded result."""
        if not get_ledger_settings().auto_apply_deposits:
            return SideEffectResult.skipped("Automatic deposit application is disabled.")
        try:
            result = DepositService.auto_apply_to_months(deposit.pk, months=months)
        except (LedgerError, DatabaseError) as exc:
            logger.warning(
                f"Auto-apply of deposit {deposit.transaction_id} failed; approval kept, apply manually: {exc}"
            )
            return SideEffectResult.failed(f"Auto-apply failed: {exc}")

        if result.already_applied:
            return SideEffectResult.skipped("Deposit is already applied.", **result.as_dict())
        if not result.allocations:
            return SideEffectResult.skipped("No uncovered months to apply to.", **result.as_dict())
        return SideEffectResult.applied(**result.as_dict())

    @staticmethod
    def auto_apply_to_months(deposit_id, months=None, today=None):
        """
        Spread an approved deposit over uncovered months, oldest first.

        Without `months`, walks from the enrollment month (or the earliest
        recorded month, if earlier) through the current month. Each month is
        filled up to its expected amount; a row that completes a month is
        created as paid, otherwise pending. Whatever cannot be placed stays
        on the deposit as `remaining`.

        A deposit already linked to any ledger row is not applied again.
        """
        today = today or get_school_today()

        with transaction.atomic():
            deposit = _get_deposit(deposit_id, lock=True)
            if deposit.status != DepositStatus.APPROVED:
                raise ValidationError("Only approved deposits can be applied.", deposit_id=str(deposit.pk))

            student = Student.objects.select_for_update().get(pk=deposit.student_id)

            if MonthlyPayment.objects.filter(deposit=deposit).exists():
                return AutoApplyResult(deposit, [], deposit.amount, already_applied=True)

            profile = student.get_fee_profile()
            rows = list(MonthlyPayment.objects.filter(student=student))
            by_month = _rows_by_month(rows)

            if months:
                candidates = sorted({normalize_month(m) for m in months})
            else:
                start = min([profile.enrollment_month] + [row.month for row in rows])
                candidates = list(iter_months(start, month_of(today)))

            remaining = deposit.amount
            allocations = []

            for month in candidates:
                if remaining < 1:
                    break

                expected = expected_amount(profile, month)
                if expected == 0:
                    continue

                month_rows = by_month.get(month, [])
                coverage = evaluate_month_coverage(month, month_rows, expected)
                if coverage.covered:
                    continue

                needed = expected - coverage.paid_total
                allocation = min(int(remaining), needed)
                if allocation <= 0:
                    continue

                completes = coverage.paid_total + allocation >= expected
                fresh_month = not any(row.counts_toward_total for row in month_rows)
                payment_type = PaymentType.FULL if fresh_month and allocation == expected else PaymentType.PARTIAL
                coverage_start, coverage_end = coverage_window(profile, month)

                payment = MonthlyPayment.objects.create(
                    student=student,
                    month=month,
                    paid_amount=allocation,
                    status=PaymentStatus.PAID if completes else PaymentStatus.PENDING,
                    payment_type=payment_type,
                    coverage_start=coverage_start,
                    coverage_end=coverage_end,
                    deposit=deposit,
                    source=deposit.source,
                    provider_reference=deposit.provider_reference,
                )
                remaining -= allocation
                allocations.append({
                    'month': month,
                    'amount': allocation,
                    'paymentId': str(payment.pk),
                    'covered': completes,
                })

            if allocations:
                log_financial_activity(
                    'DEPOSIT_APPLY',
                    target_object=deposit,
                    amount=deposit.amount - remaining,
                    currency=deposit.currency,
                    student=student,
                    additional_data={'allocations': allocations, 'remaining': str(remaining)},
                    is_automated=True,
                )

        logger.info(
            f"Applied deposit {deposit.transaction_id} to {len(allocations)} month(s); {remaining} left unapplied"
        )
        return AutoApplyResult(deposit, allocations, remaining)

    @staticmethod
    def _ensure_editable(deposit):
        if deposit.is_immutable:
            raise ImmutableError(
                "Approved or gateway deposits cannot be edited or deleted.",
                deposit_id=str(deposit.pk), status=deposit.status, source=deposit.source,
            )
        if MonthlyPayment.objects.filter(deposit=deposit).exists():
            raise InUseError(
                "This deposit is linked to monthly payments and cannot be changed.",
                deposit_id=str(deposit.pk),
            )

    @staticmethod
    def update_deposit(deposit_id, staff=None, amount=None, reason=None, transaction_id=None,
                       payment_date=None, status=None):
        """
        Edit a pending or rejected manual deposit that no ledger row uses.

        Setting status to approved behaves like set_status(approved).
        """
        with transaction.atomic():
            deposit = _get_deposit(deposit_id, lock=True)
            _ensure_can_manage(staff, deposit.student)
            DepositService._ensure_editable(deposit)

            before = {'amount': str(deposit.amount), 'reason': deposit.reason,
                      'transaction_id': deposit.transaction_id, 'status': deposit.status}

            if amount is not None:
                deposit.amount = _positive_money(amount)
            if reason is not None:
                deposit.reason = reason.strip() or 'deposit'
            if transaction_id:
                transaction_id = transaction_id.strip()
                if Deposit.objects.filter(transaction_id=transaction_id).exclude(pk=deposit.pk).exists():
                    raise ValidationError("This transaction ID is already recorded.", transactionId=transaction_id)
                deposit.transaction_id = transaction_id
            if payment_date is not None:
                deposit.payment_date = payment_date
            if status is not None:
                deposit.status = DepositStatus.parse(status)

            deposit.save()
            log_financial_activity(
                'DEPOSIT_UPDATE',
                target_object=deposit,
                amount=deposit.amount,
                currency=deposit.currency,
                student=deposit.student,
                old_values=before,
                new_values={'amount': str(deposit.amount), 'reason': deposit.reason,
                            'transaction_id': deposit.transaction_id, 'status': deposit.status},
            )

        logger.info(f"Updated deposit {deposit.transaction_id}")

        if deposit.status == DepositStatus.APPROVED:
            return DepositResult(deposit, DepositService.apply_best_effort(deposit))
        return DepositResult(deposit, SideEffectResult.skipped("Deposit is not approved."))

    @staticmethod
    @transaction.atomic
    def delete_deposit(deposit_id, staff=None):
        deposit = _get_deposit(deposit_id, lock=True)
        _ensure_can_manage(staff, deposit.student)
        DepositService._ensure_editable(deposit)

        transaction_id = deposit.transaction_id
        deposit.delete()
        logger.info(f"Deleted deposit {transaction_id}")
        return transaction_id

    @staticmethod
    def list_deposits(student_id, staff=None):
        """(student, deposits newest first annotated with linked_months)"""
        student = _get_student(student_id)
        _ensure_can_manage(staff, student)
        deposits = (
            Deposit.objects.filter(student=student)
            .annotate(linked_months=Count('monthly_payments'))
            .order_by('-created_at')
        )
        return student, list(deposits)


# =============================================================================
# GATEWAY CHECKOUTS
# =============================================================================

class CheckoutService:
    """
    One-off gateway payments.

    A checkout is opened before the student is sent to the gateway and
    finalized when the gateway's webhook arrives. Finalization is keyed by
    tx_ref, so a redelivered webhook changes nothing.
    """

    @staticmethod
    @transaction.atomic
    def open_checkout(student_id, amount, provider, intent=CheckoutIntent.DEPOSIT, months=None,
                      currency=None, staff=None):
        provider = PaymentSource.parse(provider)
        if provider not in GATEWAY_SOURCES:
            raise ValidationError("Checkouts are only available for payment gateways.", provider=provider.value)

        intent = CheckoutIntent(intent)
        months = sorted({normalize_month(m) for m in (months or [])})
        if intent == CheckoutIntent.MONTHLY and not months:
            raise ValidationError("A monthly checkout needs at least one month.")

        student = _get_student(student_id)
        _ensure_can_manage(staff, student)
        student.get_fee_profile()

        checkout = PaymentCheckout.objects.create(
            tx_ref=generate_checkout_reference(provider),
            student=student,
            amount=_positive_money(amount),
            currency=(currency or student.currency).upper(),
            provider=provider,
            intent=intent,
            months=months,
        )
        logger.info(f"Opened {provider} checkout {checkout.tx_ref} for {student.full_name}: {checkout.amount}")
        return checkout

    @staticmethod
    def finalize(tx_ref, success, provider_reference='', failure_reason='', amount=None):
        """
        Settle a checkout from its gateway callback.

        On success an approved gateway deposit keyed by tx_ref is created
        and applied to the checkout's months (or oldest-first for a plain
        deposit). On failure the checkout is marked failed.
        """
        with transaction.atomic():
            try:
                checkout = PaymentCheckout.objects.select_for_update().select_related('student').get(tx_ref=tx_ref)
            except PaymentCheckout.DoesNotExist:
                raise NotFoundError("Checkout not found.", tx_ref=tx_ref)

            if checkout.status != CheckoutStatus.PENDING:
                logger.info(f"Checkout {tx_ref} already {checkout.status}; ignoring redelivery")
                return CheckoutResult(checkout, checkout.deposit, already_processed=True)

            if not success:
                checkout.status = CheckoutStatus.FAILED
                checkout.failure_reason = (failure_reason or '')[:255]
                checkout.provider_reference = provider_reference or checkout.provider_reference
                checkout.save()
                logger.info(f"Checkout {tx_ref} failed: {failure_reason}")
                return CheckoutResult(checkout)

            received = safe_decimal(amount)
            if received is not None and round_to_currency(received) != checkout.amount:
                logger.warning(
                    f"Checkout {tx_ref} expected {checkout.amount} but gateway reported {received}; recording received amount"
                )
                received = _positive_money(received)
            else:
                received = checkout.amount

            deposit = Deposit.objects.create(
                student=checkout.student,
                amount=received,
                currency=checkout.currency,
                status=DepositStatus.APPROVED,
                source=checkout.provider,
                reason=f"{checkout.get_provider_display()} {checkout.get_intent_display().lower()}",
                transaction_id=checkout.tx_ref,
                payment_date=get_school_today(),
                provider_reference=provider_reference or '',
                metadata={'intent': checkout.intent, 'months': checkout.months},
            )
            checkout.status = CheckoutStatus.COMPLETED
            checkout.deposit = deposit
            checkout.provider_reference = provider_reference or ''
            checkout.save()

        logger.info(f"Checkout {tx_ref} completed: deposit {deposit.amount} {deposit.currency}")
        auto_apply = DepositService.apply_best_effort(deposit, months=checkout.months or None)
        return CheckoutResult(checkout, deposit, auto_apply)
