# fees/conf.py

"""
Ledger configuration.

Reads settings.TUITION_LEDGER once into a frozen LedgerSettings and
reloads it when a test overrides settings.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

import pycountry
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.signals import setting_changed
from django.dispatch import receiver

DEFAULTS = {
    'COMMISSIONS_ENABLED': True,
    'COMMISSION_RATE': '0.10',
    'DEFAULT_CURRENCY': 'ETB',
    'AVERAGE_DAYS_PER_MONTH': 30,
    'ROUNDING_TOLERANCE': '0.01',
    'AUTO_APPLY_DEPOSITS': True,
    'STRIPE_SECRET_KEY': '',
    'STRIPE_WEBHOOK_SECRET': '',
    'CHAPA_WEBHOOK_SECRET': '',
    'PROVIDER_TIMEOUT': 15,
    'PROVIDER_MAX_RETRIES': 2,
    'WEBHOOK_TOLERANCE': 300,
}


@dataclass(frozen=True)
class LedgerSettings:
    commissions_enabled: bool
    commission_rate: Decimal
    default_currency: str
    average_days_per_month: int
    rounding_tolerance: Decimal
    auto_apply_deposits: bool
    stripe_secret_key: str
    stripe_webhook_secret: str
    chapa_webhook_secret: str
    provider_timeout: int
    provider_max_retries: int
    webhook_tolerance: int


def _decimal(name, value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ImproperlyConfigured(f"TUITION_LEDGER['{name}'] must be a number, got {value!r}")


def is_known_currency(code):
    return bool(code) and pycountry.currencies.get(alpha_3=str(code).upper()) is not None


@lru_cache(maxsize=1)
def get_ledger_settings():
    raw = dict(DEFAULTS)
    raw.update(getattr(settings, 'TUITION_LEDGER', {}) or {})

    commission_rate = _decimal('COMMISSION_RATE', raw['COMMISSION_RATE'])
    if not Decimal('0') <= commission_rate <= Decimal('1'):
        raise ImproperlyConfigured("TUITION_LEDGER['COMMISSION_RATE'] must be between 0 and 1")

    default_currency = str(raw['DEFAULT_CURRENCY']).upper()
    if not is_known_currency(default_currency):
        raise ImproperlyConfigured(f"TUITION_LEDGER['DEFAULT_CURRENCY'] {default_currency!r} is not an ISO 4217 code")

    average_days = int(raw['AVERAGE_DAYS_PER_MONTH'])
    if average_days <= 0:
        raise ImproperlyConfigured("TUITION_LEDGER['AVERAGE_DAYS_PER_MONTH'] must be positive")

    return LedgerSettings(
        commissions_enabled=bool(raw['COMMISSIONS_ENABLED']),
        commission_rate=commission_rate,
        default_currency=default_currency,
        average_days_per_month=average_days,
        rounding_tolerance=_decimal('ROUNDING_TOLERANCE', raw['ROUNDING_TOLERANCE']),
        auto_apply_deposits=bool(raw['AUTO_APPLY_DEPOSITS']),
        stripe_secret_key=raw['STRIPE_SECRET_KEY'] or '',
        stripe_webhook_secret=raw['STRIPE_WEBHOOK_SECRET'] or '',
        chapa_webhook_secret=raw['CHAPA_WEBHOOK_SECRET'] or '',
        provider_timeout=int(raw['PROVIDER_TIMEOUT']),
        provider_max_retries=int(raw['PROVIDER_MAX_RETRIES']),
        webhook_tolerance=int(raw['WEBHOOK_TOLERANCE']),
    )


@receiver(setting_changed)
def reload_ledger_settings(*, setting, **kwargs):
    if setting == 'TUITION_LEDGER':
        get_ledger_settings.cache_clear()
