# fees/signals.py

"""
Fee ledger signal handlers.

Writes the financial audit trail for ledger rows and deposits:
- ledger row create/update/delete with before and after snapshots
- deposit create/delete

Deposit edits and status changes are audited by DepositService, which
knows the reason for the change.
"""

from django.db.models.signals import pre_save, post_save, post_delete
from django.dispatch import receiver
import logging

from utils.audit import log_financial_activity

logger = logging.getLogger(__name__)


# =============================================================================
# MONTHLY PAYMENT SIGNALS
# =============================================================================

@receiver(pre_save, sender='fees.MonthlyPayment')
def monthly_payment_pre_save(sender, instance, **kwargs):
    """Remember the stored values so post_save can record what changed."""
    instance._previous_snapshot = None
    if instance._state.adding:
        return
    previous = sender.objects.filter(pk=instance.pk).first()
    if previous is not None:
        instance._previous_snapshot = previous.snapshot()


@receiver(post_save, sender='fees.MonthlyPayment')
def monthly_payment_post_save(sender, instance, created, **kwargs):
    before = getattr(instance, '_previous_snapshot', None)
    after = instance.snapshot()

    if not created and before == after:
        return

    log_financial_activity(
        'LEDGER_ROW_CREATE' if created else 'LEDGER_ROW_UPDATE',
        target_object=instance,
        amount=instance.paid_amount,
        student_id=instance.student_id,
        old_values=before,
        new_values=after,
        risk_level='LOW' if created else 'MEDIUM',
        additional_data={'source': instance.source},
    )


@receiver(post_delete, sender='fees.MonthlyPayment')
def monthly_payment_post_delete(sender, instance, **kwargs):
    log_financial_activity(
        'LEDGER_ROW_DELETE',
        target_object=instance,
        amount=instance.paid_amount,
        student_id=instance.student_id,
        old_values=instance.snapshot(),
        risk_level='HIGH' if instance.status == 'paid' else 'MEDIUM',
    )
    logger.info(f"Ledger row {instance.pk} for {instance.month} removed")


# =============================================================================
# DEPOSIT SIGNALS
# =============================================================================

@receiver(post_save, sender='fees.Deposit')
def deposit_post_save(sender, instance, created, **kwargs):
    if not created:
        return
    log_financial_activity(
        'DEPOSIT_CREATE',
        target_object=instance,
        amount=instance.amount,
        currency=instance.currency,
        student_id=instance.student_id,
        new_values={'status': instance.status, 'source': instance.source, 'reason': instance.reason},
        is_automated=instance.is_gateway,
    )


@receiver(post_delete, sender='fees.Deposit')
def deposit_post_delete(sender, instance, **kwargs):
    log_financial_activity(
        'DEPOSIT_DELETE',
        target_object=instance,
        amount=instance.amount,
        currency=instance.currency,
        student_id=instance.student_id,
        old_values={'status': instance.status, 'reason': instance.reason,
                    'transaction_id': instance.transaction_id},
        risk_level='MEDIUM',
    )
