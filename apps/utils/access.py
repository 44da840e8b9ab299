# utils/access.py

"""
Staff roles as seen by the ledger.

Role resolution itself belongs to the authentication layer; this module only
turns a resolved role into the two questions the ledger asks: may this staff
member bypass the payment-sequence check, and may they touch this student.
"""

from dataclasses import dataclass

from django.db import models

from fees.exceptions import ForbiddenError


class StaffRole(models.TextChoices):
    ADMIN = 'admin', 'Administrator'
    REGISTRAL = 'registral', 'Registrar'
    CONTROLLER = 'controller', 'Controller'


# Checked in order; the first group a user belongs to wins
ROLE_PRECEDENCE = (StaffRole.ADMIN, StaffRole.REGISTRAL, StaffRole.CONTROLLER)

OVERRIDE_ROLES = frozenset({StaffRole.ADMIN, StaffRole.REGISTRAL})


@dataclass(frozen=True)
class StaffContext:
    role: StaffRole
    code: str

    @property
    def can_override(self):
        """Admins and registrars may set a legacy baseline or skip the history check."""
        return self.role in OVERRIDE_ROLES

    def can_manage(self, student):
        if self.role == StaffRole.CONTROLLER:
            return bool(student.controller_code) and student.controller_code == self.code
        return True

    def ensure_can_manage(self, student):
        if not self.can_manage(student):
            raise ForbiddenError(
                "You can only manage payments for students assigned to you.",
                student_id=str(student.pk),
            )


def resolve_staff_context(user):
    """
    Map an authenticated Django user onto a StaffContext.

    Superusers are admins; everyone else needs membership of one of the
    role groups. Returns None for anonymous or role-less users.
    """
    if user is None or not user.is_authenticated:
        return None

    if user.is_superuser:
        return StaffContext(role=StaffRole.ADMIN, code=user.get_username())

    group_names = set(user.groups.values_list('name', flat=True))
    for role in ROLE_PRECEDENCE:
        if role.value in group_names:
            return StaffContext(role=role, code=user.get_username())
    return None
