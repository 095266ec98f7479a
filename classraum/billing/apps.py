from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles plan tiers, capacity add-ons, subscription state and the payment
    gateway integration.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "classraum.billing"
    verbose_name = "Billing"

    def ready(self):
        """Register the plan catalog system check."""
        from classraum.billing import checks  # noqa: F401
