from django.apps import AppConfig


class CashConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "cash"
    verbose_name = "Cash Shifts"

    def ready(self):
        import cash.handlers  # noqa: F401
