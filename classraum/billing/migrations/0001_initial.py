from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import model_utils.fields


TIER_CHOICES = [
    ("free", "Free"),
    ("basic", "Basic"),
    ("pro", "Pro"),
    ("enterprise", "Enterprise"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("academies", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created", model_utils.fields.AutoCreatedField(default=django.utils.timezone.now, editable=False, verbose_name="created")),
                ("modified", model_utils.fields.AutoLastModifiedField(default=django.utils.timezone.now, editable=False, verbose_name="modified")),
                ("tier", models.CharField(choices=TIER_CHOICES, default="free", max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("trialing", "Trial"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                        ],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("billing_cycle", models.CharField(choices=[("monthly", "Monthly"), ("yearly", "Yearly")], default="monthly", max_length=10)),
                ("monthly_amount", models.PositiveIntegerField(default=0, help_text="Current recurring charge in KRW: base price plus add-ons.")),
                ("total_user_limit", models.PositiveIntegerField(blank=True, help_text="Students plus teachers. Null = unlimited.", null=True)),
                ("storage_limit_gb", models.PositiveIntegerField(blank=True, help_text="Null = unlimited.", null=True)),
                ("classroom_limit", models.PositiveIntegerField(blank=True, help_text="Null = unlimited.", null=True)),
                ("additional_students", models.PositiveIntegerField(default=0)),
                ("additional_teachers", models.PositiveIntegerField(default=0)),
                ("additional_storage_gb", models.PositiveIntegerField(default=0)),
                ("auto_renew", models.BooleanField(default=True)),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("next_billing_date", models.DateTimeField(blank=True, null=True)),
                ("last_payment_date", models.DateTimeField(blank=True, null=True)),
                ("pending_tier", models.CharField(blank=True, choices=TIER_CHOICES, help_text="Tier to switch to at pending_change_effective_date.", max_length=20)),
                ("pending_monthly_amount", models.PositiveIntegerField(blank=True, null=True)),
                ("pending_change_effective_date", models.DateTimeField(blank=True, null=True)),
                ("gateway_customer_id", models.CharField(blank=True, help_text="Stripe Customer ID (cus_xxx).", max_length=255)),
                ("billing_key", models.CharField(blank=True, help_text="Stored payment instrument (Stripe PaymentMethod pm_xxx).", max_length=255)),
                ("billing_key_issued_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.TextField(blank=True)),
                (
                    "academy",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscription",
                        to="academies.academy",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status"], name="billing_sub_status_6d1f0c_idx"),
                    models.Index(fields=["gateway_customer_id"], name="billing_sub_gateway_3a7e21_idx"),
                    models.Index(fields=["pending_change_effective_date"], name="billing_sub_pending_9b4c52_idx"),
                    models.Index(fields=["next_billing_date"], name="billing_sub_next_bi_e08d17_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(
                                ("pending_change_effective_date__isnull", True),
                                ("pending_monthly_amount__isnull", True),
                                ("pending_tier", ""),
                            )
                            | models.Q(
                                models.Q(("pending_tier", ""), _negated=True),
                                ("pending_change_effective_date__isnull", False),
                            )
                        ),
                        name="subscription_pending_change_complete",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created", model_utils.fields.AutoCreatedField(default=django.utils.timezone.now, editable=False, verbose_name="created")),
                ("modified", model_utils.fields.AutoLastModifiedField(default=django.utils.timezone.now, editable=False, verbose_name="modified")),
                (
                    "change_type",
                    models.CharField(
                        choices=[
                            ("addon", "Add-on change"),
                            ("upgrade", "Upgrade"),
                            ("downgrade", "Downgrade scheduled"),
                            ("downgrade_applied", "Downgrade applied"),
                            ("downgrade_abandoned", "Downgrade abandoned"),
                            ("cancel", "Auto-renew turned off"),
                            ("expire", "Expired"),
                            ("payment_method", "Payment method updated"),
                        ],
                        max_length=30,
                    ),
                ),
                ("old_tier", models.CharField(choices=TIER_CHOICES, max_length=20)),
                ("new_tier", models.CharField(choices=TIER_CHOICES, max_length=20)),
                ("old_monthly_amount", models.PositiveIntegerField(blank=True, null=True)),
                ("new_monthly_amount", models.PositiveIntegerField(blank=True, null=True)),
                ("effective_immediately", models.BooleanField(default=True, help_text="Whether change took effect immediately or was scheduled.")),
                ("scheduled_at", models.DateTimeField(blank=True, help_text="When scheduled change will take effect.", null=True)),
                ("proration_amount", models.PositiveIntegerField(blank=True, help_text="Prorated amount charged in KRW.", null=True)),
                ("notes", models.TextField(blank=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="changes",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created", "-id"],
            },
        ),
        migrations.CreateModel(
            name="GatewayEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(max_length=100)),
                ("outcome", models.CharField(choices=[("succeeded", "Succeeded"), ("failed", "Failed"), ("ignored", "Ignored")], max_length=20)),
                ("amount", models.PositiveIntegerField(blank=True, null=True)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("processed_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="gateway_events",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-processed_at"],
            },
        ),
    ]
