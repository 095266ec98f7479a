from django.apps import AppConfig


class AcademiesConfig(AppConfig):
    """
    Academies, their managers, and the usage counters billing reads.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "classraum.academies"
    verbose_name = "Academies"
