"""Closed enumerations and plan catalogue for the billing core."""
from __future__ import annotations

from typing import Dict

from django.conf import settings
from django.db import models


class Plan(models.TextChoices):
    TRIAL = "trial", "Trial"
    BASIC = "basic", "Basic"
    BUSINESS = "business", "Business"
    ENTERPRISE = "enterprise", "Enterprise"


class SubscriptionStatus(models.TextChoices):
    TRIAL = "trial", "Trial"
    ACTIVE = "active", "Active"
    PENDING_CANCEL = "pending_cancel", "Pending cancel"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"


class CancelMode(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    IMMEDIATE = "immediate", "Immediate"


class TransactionType(models.TextChoices):
    CHARGE = "charge", "Charge"
    REFUND = "refund", "Refund"


class PaymentType(models.TextChoices):
    SUBSCRIPTION = "subscription", "Subscription"
    FIRST_PAYMENT = "first_payment", "First payment"
    TRIAL_CONVERSION = "trial_conversion", "Trial conversion"
    UPGRADE = "upgrade", "Upgrade"
    DOWNGRADE = "downgrade", "Downgrade"
    RESUBSCRIBE = "resubscribe", "Resubscribe"
    PLAN_CHANGE_REFUND = "plan_change_refund", "Plan change refund"
    CANCEL_REFUND = "cancel_refund", "Cancel refund"
    REFUND = "refund", "Refund"
    ADMIN_MANUAL = "admin_manual", "Admin manual charge"


# Payment types that never count as a refundable source charge.
REFUND_PAYMENT_TYPES = frozenset(
    {
        PaymentType.PLAN_CHANGE_REFUND.value,
        PaymentType.CANCEL_REFUND.value,
        PaymentType.REFUND.value,
    }
)


class PaymentStatus(models.TextChoices):
    DONE = "done", "Done"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


class ChangeType(models.TextChoices):
    NEW = "new", "New"
    UPGRADE = "upgrade", "Upgrade"
    DOWNGRADE = "downgrade", "Downgrade"
    RENEW = "renew", "Renew"
    CANCEL = "cancel", "Cancel"
    EXPIRE = "expire", "Expire"
    REACTIVATE = "reactivate", "Reactivate"
    ADMIN_EDIT = "admin_edit", "Admin edit"


# Accepted by some legacy admin inputs but never produced by a transition.
RESERVED_STATUSES = frozenset({"past_due"})

PLAN_ORDER = {
    Plan.TRIAL: 0,
    Plan.BASIC: 1,
    Plan.BUSINESS: 2,
    Plan.ENTERPRISE: 3,
}

DEFAULT_PLAN_PRICES: Dict[str, int] = {
    Plan.TRIAL: 0,
    Plan.BASIC: 39000,
    Plan.BUSINESS: 99000,
    Plan.ENTERPRISE: 0,
}

ORDER_PREFIXES = {
    "first_payment": "FIRST",
    "trial_conversion": "CONVERT",
    "upgrade": "UPGRADE",
    "downgrade": "DOWNGRADE",
    "resubscribe": "RESUB",
    "refund": "REFUND",
    "admin_manual": "ADMIN",
}


def plan_price(plan: str) -> int:
    """Return the list price of ``plan`` using the configured catalogue."""

    prices = getattr(settings, "BILLING_PLAN_PRICES", None) or DEFAULT_PLAN_PRICES
    try:
        return int(prices[str(plan)])
    except KeyError:
        return int(DEFAULT_PLAN_PRICES[Plan(plan)])


def plan_name(plan: str) -> str:
    try:
        return Plan(plan).label
    except ValueError:
        return str(plan)


def trial_days() -> int:
    return int(getattr(settings, "BILLING_TRIAL_DAYS", 30))


def max_cards() -> int:
    return int(getattr(settings, "BILLING_MAX_CARDS", 5))
