# fees/tests/helpers.py

from datetime import date
from decimal import Decimal

from django.contrib.auth.models import Group, User

from students.models import Student
from utils.access import StaffContext, StaffRole

CONTROLLER_CODE = 'abebe.k'


def make_student(full_name='Hana Tesfaye', fee='300', enrolled=date(2025, 1, 1), currency='ETB',
                 controller_code=CONTROLLER_CODE):
    return Student.objects.create(
        full_name=full_name,
        base_monthly_fee=Decimal(fee),
        enrollment_start_date=enrolled,
        currency=currency,
        controller_code=controller_code,
    )


def controller(code=CONTROLLER_CODE):
    return StaffContext(role=StaffRole.CONTROLLER, code=code)


def registrar(code='registrar'):
    return StaffContext(role=StaffRole.REGISTRAL, code=code)


def make_user(username, role=None, superuser=False):
    if superuser:
        return User.objects.create_superuser(username=username, password='pass', email=f"{username}@example.com")
    user = User.objects.create_user(username=username, password='pass')
    if role:
        group, _ = Group.objects.get_or_create(name=role.value)
        user.groups.add(group)
    return user
