import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

PLAN_CHOICES = [
    ("trial", "Trial"),
    ("basic", "Basic"),
    ("business", "Business"),
    ("enterprise", "Enterprise"),
]

STATUS_CHOICES = [
    ("trial", "Trial"),
    ("active", "Active"),
    ("pending_cancel", "Pending cancel"),
    ("canceled", "Canceled"),
    ("expired", "Expired"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("tenant_id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("owner_id", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("brand_name", models.CharField(blank=True, default="", max_length=255)),
                ("plan", models.CharField(choices=PLAN_CHOICES, default="trial", max_length=20)),
                ("status", models.CharField(choices=STATUS_CHOICES, default="trial", max_length=20)),
                (
                    "amount",
                    models.IntegerField(
                        default=0,
                        help_text="Actual charge of the current period",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "base_amount",
                    models.IntegerField(
                        default=0,
                        help_text="List price of the current plan",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "amount_period_days",
                    models.IntegerField(
                        default=30,
                        help_text="Day-count basis the current amount was prorated against",
                    ),
                ),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("next_billing_date", models.DateTimeField(blank=True, null=True)),
                ("billing_key", models.CharField(blank=True, max_length=255, null=True)),
                ("card_info", models.JSONField(blank=True, null=True)),
                ("card_alias", models.CharField(blank=True, max_length=100, null=True)),
                ("primary_card_id", models.CharField(blank=True, max_length=64, null=True)),
                ("pending_plan", models.CharField(blank=True, choices=PLAN_CHOICES, max_length=20, null=True)),
                ("pending_amount", models.IntegerField(blank=True, null=True)),
                ("pending_change_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancel_mode",
                    models.CharField(
                        blank=True,
                        choices=[("scheduled", "Scheduled"), ("immediate", "Immediate")],
                        max_length=20,
                        null=True,
                    ),
                ),
                ("cancel_reason", models.TextField(blank=True, default="")),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_restore_billing_date", models.DateTimeField(blank=True, null=True)),
                ("previous_plan", models.CharField(blank=True, max_length=20, null=True)),
                ("previous_amount", models.IntegerField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "billing_subscription",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="subscription_status_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_period_days__gt", 0)),
                        name="subscription_period_days_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("tenant_id", models.CharField(db_index=True, max_length=64)),
                ("order_id", models.CharField(max_length=128)),
                ("payment_key", models.CharField(blank=True, max_length=255, null=True)),
                ("amount", models.IntegerField()),
                (
                    "transaction_type",
                    models.CharField(choices=[("charge", "Charge"), ("refund", "Refund")], max_length=10),
                ),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("subscription", "Subscription"),
                            ("first_payment", "First payment"),
                            ("trial_conversion", "Trial conversion"),
                            ("upgrade", "Upgrade"),
                            ("downgrade", "Downgrade"),
                            ("resubscribe", "Resubscribe"),
                            ("plan_change_refund", "Plan change refund"),
                            ("cancel_refund", "Cancel refund"),
                            ("refund", "Refund"),
                            ("admin_manual", "Admin manual charge"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("done", "Done"), ("failed", "Failed"), ("canceled", "Canceled")],
                        max_length=10,
                    ),
                ),
                ("plan", models.CharField(blank=True, max_length=20, null=True)),
                ("order_name", models.CharField(blank=True, default="", max_length=255)),
                ("method", models.CharField(blank=True, default="", max_length=50)),
                ("card_info", models.JSONField(blank=True, null=True)),
                ("receipt_url", models.URLField(blank=True, default="", max_length=500)),
                ("reason", models.TextField(blank=True, default="")),
                (
                    "refunded_amount",
                    models.IntegerField(default=0, validators=[django.core.validators.MinValueValidator(0)]),
                ),
                ("idempotency_key", models.CharField(blank=True, max_length=128, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "original_payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="billing.payment",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant_id", "-created_at"], name="payment_tenant_created_idx"),
                    models.Index(fields=["order_id"], name="payment_order_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(
                            ("idempotency_key__isnull", False),
                            models.Q(("idempotency_key", ""), _negated=True),
                            ("status", "done"),
                        ),
                        fields=("idempotency_key",),
                        name="payment_idempotency_key_done_unique",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("transaction_type", "charge"), _negated=True),
                            ("refunded_amount__lte", models.F("amount")),
                            _connector="OR",
                        ),
                        name="payment_refund_within_charge",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionHistoryRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("tenant_id", models.CharField(db_index=True, max_length=64)),
                ("owner_id", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("plan", models.CharField(choices=PLAN_CHOICES, max_length=20)),
                ("status", models.CharField(choices=STATUS_CHOICES, max_length=20)),
                ("amount", models.IntegerField(default=0)),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("billing_date", models.DateTimeField(blank=True, null=True)),
                (
                    "change_type",
                    models.CharField(
                        choices=[
                            ("new", "New"),
                            ("upgrade", "Upgrade"),
                            ("downgrade", "Downgrade"),
                            ("renew", "Renew"),
                            ("cancel", "Cancel"),
                            ("expire", "Expire"),
                            ("reactivate", "Reactivate"),
                            ("admin_edit", "Admin edit"),
                        ],
                        max_length=20,
                    ),
                ),
                ("changed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("changed_by", models.CharField(default="system", max_length=20)),
                ("changed_by_admin_id", models.CharField(blank=True, max_length=64, null=True)),
                ("previous_plan", models.CharField(blank=True, max_length=20, null=True)),
                ("previous_status", models.CharField(blank=True, max_length=20, null=True)),
                ("payment_id", models.CharField(blank=True, max_length=64, null=True)),
                ("order_id", models.CharField(blank=True, max_length=128, null=True)),
                ("note", models.TextField(blank=True, default="")),
            ],
            options={
                "db_table": "billing_subscription_history",
                "ordering": ["-changed_at"],
                "indexes": [
                    models.Index(fields=["tenant_id", "-changed_at"], name="history_tenant_changed_idx"),
                    models.Index(fields=["owner_id", "-changed_at"], name="history_owner_changed_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("period_end__isnull", True)),
                        fields=("tenant_id",),
                        name="history_single_open_segment",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="CardInstrument",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("tenant_id", models.CharField(db_index=True, max_length=64)),
                ("owner_id", models.CharField(blank=True, default="", max_length=64)),
                ("billing_key", models.CharField(max_length=255)),
                ("card_info", models.JSONField(default=dict)),
                (
                    "card_number",
                    models.CharField(help_text="Masked number as returned by the gateway", max_length=32),
                ),
                ("alias", models.CharField(blank=True, max_length=100, null=True)),
                ("is_primary", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "billing_card_instrument",
                "ordering": ["created_at", "id"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_primary", True)),
                        fields=("tenant_id",),
                        name="card_single_primary_per_tenant",
                    ),
                    models.UniqueConstraint(
                        fields=("tenant_id", "card_number"),
                        condition=~models.Q(("card_number", "")),
                        name="card_unique_number_per_tenant",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionChangeLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("tenant_id", models.CharField(db_index=True, max_length=64)),
                ("changed_by", models.CharField(max_length=64)),
                ("reason", models.TextField(blank=True, default="")),
                ("previous_data", models.JSONField(default=dict)),
                ("new_data", models.JSONField(default=dict)),
                ("changed_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "billing_subscription_change_log",
                "ordering": ["-changed_at"],
            },
        ),
    ]
