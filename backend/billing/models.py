"""Billing models: subscriptions, payment ledger, history segments and cards."""
import uuid

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from billing.constants import (
    CancelMode,
    ChangeType,
    PaymentStatus,
    PaymentType,
    Plan,
    SubscriptionStatus,
    TransactionType,
)


class Subscription(models.Model):
    """One subscription per tenant; only the lifecycle service mutates it."""

    tenant_id = models.CharField(max_length=64, primary_key=True)
    owner_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    email = models.EmailField(blank=True, default="")
    brand_name = models.CharField(max_length=255, blank=True, default="")
    plan = models.CharField(max_length=20, choices=Plan.choices, default=Plan.TRIAL)
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.TRIAL,
    )
    amount = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Actual charge of the current period",
    )
    base_amount = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="List price of the current plan",
    )
    amount_period_days = models.IntegerField(
        default=30,
        help_text="Day-count basis the current amount was prorated against",
    )
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    next_billing_date = models.DateTimeField(null=True, blank=True)

    billing_key = models.CharField(max_length=255, null=True, blank=True)
    card_info = models.JSONField(null=True, blank=True)
    card_alias = models.CharField(max_length=100, null=True, blank=True)
    primary_card_id = models.CharField(max_length=64, null=True, blank=True)

    pending_plan = models.CharField(max_length=20, choices=Plan.choices, null=True, blank=True)
    pending_amount = models.IntegerField(null=True, blank=True)
    pending_change_at = models.DateTimeField(null=True, blank=True)

    cancel_mode = models.CharField(max_length=20, choices=CancelMode.choices, null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default="")
    canceled_at = models.DateTimeField(null=True, blank=True)
    cancel_restore_billing_date = models.DateTimeField(null=True, blank=True)

    previous_plan = models.CharField(max_length=20, null=True, blank=True)
    previous_amount = models.IntegerField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_period_days__gt=0),
                name="subscription_period_days_positive",
            ),
        ]
        indexes = [
            models.Index(fields=["status"], name="subscription_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id} ({self.plan}/{self.status})"


class Payment(models.Model):
    """Append-only ledger row; refunds carry a negative amount."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant_id = models.CharField(max_length=64, db_index=True)
    order_id = models.CharField(max_length=128)
    payment_key = models.CharField(max_length=255, null=True, blank=True)
    amount = models.IntegerField()
    transaction_type = models.CharField(max_length=10, choices=TransactionType.choices)
    type = models.CharField(max_length=32, choices=PaymentType.choices)
    status = models.CharField(max_length=10, choices=PaymentStatus.choices)
    plan = models.CharField(max_length=20, null=True, blank=True)
    order_name = models.CharField(max_length=255, blank=True, default="")
    method = models.CharField(max_length=50, blank=True, default="")
    card_info = models.JSONField(null=True, blank=True)
    receipt_url = models.URLField(max_length=500, blank=True, default="")
    reason = models.TextField(blank=True, default="")
    original_payment = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refunds",
    )
    refunded_amount = models.IntegerField(default=0, validators=[MinValueValidator(0)])
    idempotency_key = models.CharField(max_length=128, null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "billing_payment"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=Q(idempotency_key__isnull=False) & ~Q(idempotency_key="") & Q(status="done"),
                name="payment_idempotency_key_done_unique",
            ),
            models.CheckConstraint(
                condition=~Q(transaction_type="charge") | Q(refunded_amount__lte=models.F("amount")),
                name="payment_refund_within_charge",
            ),
        ]
        indexes = [
            models.Index(fields=["tenant_id", "-created_at"], name="payment_tenant_created_idx"),
            models.Index(fields=["order_id"], name="payment_order_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} {self.transaction_type} {self.amount}"


class SubscriptionHistoryRecord(models.Model):
    """Per-tenant period segment; ``period_end`` is null while open."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant_id = models.CharField(max_length=64, db_index=True)
    owner_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    email = models.EmailField(blank=True, default="")
    plan = models.CharField(max_length=20, choices=Plan.choices)
    status = models.CharField(max_length=20, choices=SubscriptionStatus.choices)
    amount = models.IntegerField(default=0)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField(null=True, blank=True)
    billing_date = models.DateTimeField(null=True, blank=True)
    change_type = models.CharField(max_length=20, choices=ChangeType.choices)
    changed_at = models.DateTimeField(default=timezone.now)
    changed_by = models.CharField(max_length=20, default="system")
    changed_by_admin_id = models.CharField(max_length=64, null=True, blank=True)
    previous_plan = models.CharField(max_length=20, null=True, blank=True)
    previous_status = models.CharField(max_length=20, null=True, blank=True)
    payment_id = models.CharField(max_length=64, null=True, blank=True)
    order_id = models.CharField(max_length=128, null=True, blank=True)
    note = models.TextField(blank=True, default="")

    class Meta:
        db_table = "billing_subscription_history"
        ordering = ["-changed_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant_id"],
                condition=Q(period_end__isnull=True),
                name="history_single_open_segment",
            ),
        ]
        indexes = [
            models.Index(fields=["tenant_id", "-changed_at"], name="history_tenant_changed_idx"),
            models.Index(fields=["owner_id", "-changed_at"], name="history_owner_changed_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id} {self.change_type} {self.period_start:%Y-%m-%d}"


class CardInstrument(models.Model):
    """Stored payment instrument; at most one primary per tenant."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant_id = models.CharField(max_length=64, db_index=True)
    owner_id = models.CharField(max_length=64, blank=True, default="")
    billing_key = models.CharField(max_length=255)
    card_info = models.JSONField(default=dict)
    card_number = models.CharField(max_length=32, help_text="Masked number as returned by the gateway")
    alias = models.CharField(max_length=100, null=True, blank=True)
    is_primary = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_card_instrument"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant_id"],
                condition=Q(is_primary=True),
                name="card_single_primary_per_tenant",
            ),
            models.UniqueConstraint(
                fields=["tenant_id", "card_number"],
                condition=~Q(card_number=""),
                name="card_unique_number_per_tenant",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id} {self.card_number}"


class SubscriptionChangeLog(models.Model):
    """Audit row for admin edits of a subscription."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant_id = models.CharField(max_length=64, db_index=True)
    changed_by = models.CharField(max_length=64)
    reason = models.TextField(blank=True, default="")
    previous_data = models.JSONField(default=dict)
    new_data = models.JSONField(default=dict)
    changed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "billing_subscription_change_log"
        ordering = ["-changed_at"]
