"""
Academy models consulted by billing.

The academy itself, the managers allowed to administer its subscription, and
a denormalized usage row. Enrollment, staffing and file uploads are owned by
other parts of the product; they keep ``AcademyUsage`` current. Billing only
reads it.

Relationship: Academy ──1:N── Manager ──1:1── User
              Academy ──1:1── AcademyUsage
"""

from decimal import Decimal

from django.conf import settings
from django.db import models
from model_utils.models import TimeStampedModel


class Academy(TimeStampedModel):
    """A school or hagwon that holds one subscription."""

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=200, unique=True)
    billing_email = models.EmailField(
        blank=True,
        help_text="Where the payment gateway sends receipts.",
    )

    class Meta:
        verbose_name_plural = "academies"
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Manager(TimeStampedModel):
    """
    A user allowed to manage an academy's subscription.

    A user manages at most one academy. API requests are scoped to it.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="academy_manager",
    )
    academy = models.ForeignKey(
        Academy,
        on_delete=models.CASCADE,
        related_name="managers",
    )

    def __str__(self) -> str:
        return f"{self.user} @ {self.academy}"


class AcademyUsage(models.Model):
    """
    Current consumption counters for an academy.

    Storage is kept as a decimal number of gigabytes because uploads are not
    billed in whole gigabytes.
    """

    academy = models.OneToOneField(
        Academy,
        on_delete=models.CASCADE,
        related_name="usage",
    )
    student_count = models.PositiveIntegerField(default=0)
    teacher_count = models.PositiveIntegerField(default=0)
    storage_used_gb = models.DecimalField(
        max_digits=12,
        decimal_places=3,
        default=Decimal("0"),
    )
    classroom_count = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "academy usage"
        verbose_name_plural = "academy usage"

    def __str__(self) -> str:
        return (
            f"{self.academy}: {self.student_count} students, "
            f"{self.teacher_count} teachers, {self.storage_used_gb} GB"
        )
