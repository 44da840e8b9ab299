# utils/audit.py

import logging

from utils.context import get_request_context
from utils.models import FinancialAuditLog

audit_logger = logging.getLogger("financial_audit")
logger = logging.getLogger(__name__)


def log_financial_activity(
    action,
    target_object=None,
    amount=None,
    currency=None,
    student=None,
    student_id=None,
    old_values=None,
    new_values=None,
    notes=None,
    risk_level='LOW',
    additional_data=None,
    is_automated=False,
):
    """
    Record a financial action in FinancialAuditLog.

    Runs inside the caller's transaction, so an audit row only exists if the
    change it describes was committed.

    Args:
        action (str): One of FinancialAuditLog.FINANCIAL_ACTIONS.
        target_object (Model instance, optional): Row affected.
        amount (Decimal or int, optional): Money involved.
        currency (str, optional): ISO 4217 code.
        student (Student instance, optional): Related student.
        student_id (optional): Used when only the id is at hand.
        old_values / new_values (dict, optional): Before/after snapshot.
        risk_level (str): 'LOW', 'MEDIUM', 'HIGH' or 'CRITICAL'.
        is_automated (bool): True for webhook or auto-apply writes.
    """
    context = get_request_context() or {}
    user = context.get('user')

    entry = FinancialAuditLog(
        action=action,
        user_id=str(user.id) if user else None,
        user_name=(user.get_full_name() or user.get_username()) if user else None,
        ip_address=context.get('ip_address'),
        request_path=context.get('request_path', ''),
        amount_involved=amount,
        currency=currency,
        old_values=old_values,
        new_values=new_values,
        notes=notes,
        risk_level=risk_level,
        additional_data=additional_data or {},
        is_automated=is_automated or user is None,
    )

    if target_object is not None:
        entry.object_type = target_object.__class__.__name__
        entry.object_id = str(target_object.pk)
        entry.object_description = str(target_object)[:500]

    if student is not None:
        entry.student_id = str(student.pk)
        entry.student_name = student.full_name
    elif student_id is not None:
        entry.student_id = str(student_id)

    entry.save()

    audit_logger.info(
        f"{action} {entry.object_type}:{entry.object_id} "
        f"amount={amount} {currency or ''} student={entry.student_id} risk={risk_level}"
    )
    return entry
