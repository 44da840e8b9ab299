# utils/models.py

"""
Shared base model and the financial audit trail.

Every ledger model inherits BaseModel, which stamps timestamps in the
school's operational timezone and records which user (and from which IP)
created or last touched the row, using the thread-local request context
set by AuditContextMiddleware.
"""

import logging
import uuid

from django.db import models

logger = logging.getLogger(__name__)


# =============================================================================
# BASE MODEL
# =============================================================================

class BaseModel(models.Model):
    """
    Abstract base with UUID primary key and audit fields.

    created_by_id/updated_by_id are CharFields rather than foreign keys so
    audit data survives user deletion.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    created_at = models.DateTimeField("Created At", db_index=True)
    updated_at = models.DateTimeField("Updated At", db_index=True)

    created_by_id = models.CharField("Created By ID", max_length=50, null=True, blank=True, db_index=True)
    updated_by_id = models.CharField("Updated By ID", max_length=50, null=True, blank=True, db_index=True)
    created_from_ip = models.GenericIPAddressField("Created From IP", null=True, blank=True)
    updated_from_ip = models.GenericIPAddressField("Updated From IP", null=True, blank=True)

    change_reason = models.CharField("Change Reason", max_length=255, blank=True, null=True)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        """
        Set timestamps in school time and populate audit fields from the
        current request context.
        """
        from utils.context import get_request_context
        from utils.utils import get_school_current_time

        is_new = self._state.adding
        now = get_school_current_time()

        if is_new:
            if not self.created_at:
                self.created_at = now
            if not self.updated_at:
                self.updated_at = now
        else:
            self.updated_at = now
            update_fields = kwargs.get('update_fields')
            if update_fields is not None:
                kwargs['update_fields'] = set(update_fields) | {'updated_at', 'updated_by_id', 'updated_from_ip'}

        context = get_request_context()
        if context:
            user = context.get('user')
            ip_address = context.get('ip_address')

            if is_new:
                if user and not self.created_by_id:
                    self.created_by_id = str(user.id)
                if ip_address and not self.created_from_ip:
                    self.created_from_ip = ip_address

            if user:
                self.updated_by_id = str(user.id)
            if ip_address:
                self.updated_from_ip = ip_address
        elif is_new:
            logger.debug(
                f"No request context available when creating {self.__class__.__name__}. "
                f"Audit fields will not be populated."
            )

        return super().save(*args, **kwargs)


# =============================================================================
# FINANCIAL AUDIT LOG
# =============================================================================

class FinancialAuditLog(models.Model):
    """
    Append-only trail of money movements: ledger rows, deposits,
    commissions and subscription transitions.
    """

    FINANCIAL_ACTIONS = [
        ('LEDGER_ROW_CREATE', 'Monthly Payment Recorded'),
        ('LEDGER_ROW_UPDATE', 'Monthly Payment Updated'),
        ('LEDGER_ROW_DELETE', 'Monthly Payment Deleted'),
        ('DEPOSIT_CREATE', 'Deposit Recorded'),
        ('DEPOSIT_UPDATE', 'Deposit Updated'),
        ('DEPOSIT_STATUS', 'Deposit Status Changed'),
        ('DEPOSIT_DELETE', 'Deposit Deleted'),
        ('DEPOSIT_APPLY', 'Deposit Applied To Months'),
        ('COMMISSION_CREATE', 'Controller Commission Recorded'),
        ('SUBSCRIPTION_TRANSITION', 'Subscription Plan Changed'),
        ('SUBSCRIPTION_RENEWAL', 'Subscription Renewed'),
        ('SUBSCRIPTION_STATUS', 'Subscription Status Changed'),
    ]

    RISK_LEVELS = [
        ('LOW', 'Low Risk'),
        ('MEDIUM', 'Medium Risk'),
        ('HIGH', 'High Risk'),
        ('CRITICAL', 'Critical Risk'),
    ]

    id = models.AutoField(primary_key=True)
    timestamp = models.DateTimeField(db_index=True)
    action = models.CharField(max_length=30, choices=FINANCIAL_ACTIONS, db_index=True)

    # CharField ids so the trail outlives the rows it describes
    user_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    user_name = models.CharField(max_length=200, null=True, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    request_path = models.CharField(max_length=500, blank=True, default='')

    object_type = models.CharField(max_length=100, blank=True, default='')
    object_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    object_description = models.CharField(max_length=500, null=True, blank=True)

    amount_involved = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=3, null=True, blank=True)

    student_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    student_name = models.CharField(max_length=200, null=True, blank=True)

    old_values = models.JSONField(null=True, blank=True)
    new_values = models.JSONField(null=True, blank=True)
    risk_level = models.CharField(max_length=10, choices=RISK_LEVELS, default='LOW', db_index=True)
    additional_data = models.JSONField(default=dict, blank=True)
    notes = models.TextField(null=True, blank=True)
    is_automated = models.BooleanField(default=False)

    class Meta:
        verbose_name = "Financial Audit Log"
        verbose_name_plural = "Financial Audit Logs"
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['timestamp', 'action']),
            models.Index(fields=['student_id', 'timestamp']),
        ]

    def __str__(self):
        return f"{self.get_action_display()} at {self.timestamp}"

    def save(self, *args, **kwargs):
        from utils.utils import get_school_current_time

        if not self.timestamp:
            self.timestamp = get_school_current_time()
        return super().save(*args, **kwargs)
