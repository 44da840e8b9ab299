# fees/apps.py

from django.apps import AppConfig


class FeesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "fees"
    verbose_name = "Tuition Ledger"

    def ready(self):
        """
        Connect signal handlers and resolve ledger settings so a bad
        configuration fails at startup rather than on the first payment.
        """
        import fees.signals  # noqa: F401
        from fees.conf import get_ledger_settings

        get_ledger_settings()
