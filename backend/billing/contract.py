"""Caller contract for the subscription lifecycle.

Requests are validated with DRF serializers and dispatched to
:class:`SubscriptionLifecycle`; every outcome is shaped into a plain dict
with a ``success`` flag so HTTP views and task callers share one format.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

from rest_framework import serializers

from billing.constants import CancelMode, Plan
from billing.exceptions import BillingError, ValidationError
from billing.services.subscription_lifecycle import ADMIN_EDITABLE_FIELDS, SubscriptionLifecycle

logger = logging.getLogger(__name__)

PURCHASABLE_PLANS = [plan.value for plan in Plan if plan != Plan.TRIAL]


class TenantRequestSerializer(serializers.Serializer):
    tenant_id = serializers.CharField(max_length=64)
    owner_id = serializers.CharField(max_length=64, required=False)


class IdempotentRequestSerializer(TenantRequestSerializer):
    idempotency_key = serializers.CharField(max_length=128, required=False, allow_blank=False)


class StartTrialSerializer(serializers.Serializer):
    tenant_id = serializers.CharField(max_length=64)
    owner_id = serializers.CharField(max_length=64)
    email = serializers.EmailField()
    brand_name = serializers.CharField(max_length=255, required=False, allow_blank=True)


class CardInfoSerializer(serializers.Serializer):
    company = serializers.CharField(max_length=64, required=False, allow_blank=True)
    number = serializers.CharField(max_length=32)
    card_type = serializers.CharField(max_length=32, required=False, allow_blank=True)
    owner_type = serializers.CharField(max_length=32, required=False, allow_blank=True)


class StartSubscriptionSerializer(StartTrialSerializer):
    plan = serializers.ChoiceField(choices=PURCHASABLE_PLANS)
    billing_key = serializers.CharField(max_length=255)
    card_info = CardInfoSerializer()
    idempotency_key = serializers.CharField(max_length=128, required=False, allow_blank=False)


class PlanRequestSerializer(IdempotentRequestSerializer):
    plan = serializers.ChoiceField(choices=PURCHASABLE_PLANS)


class ReservePlanSerializer(TenantRequestSerializer):
    plan = serializers.ChoiceField(choices=PURCHASABLE_PLANS)


class ChangePlanSerializer(IdempotentRequestSerializer):
    new_plan = serializers.ChoiceField(choices=PURCHASABLE_PLANS)


class SchedulePlanChangeSerializer(TenantRequestSerializer):
    new_plan = serializers.ChoiceField(choices=PURCHASABLE_PLANS)


class CancelSerializer(IdempotentRequestSerializer):
    mode = serializers.ChoiceField(choices=CancelMode.values)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class ScheduledRunSerializer(serializers.Serializer):
    """Period-end steps triggered by an external scheduler."""

    tenant_id = serializers.CharField(max_length=64)
    at = serializers.DateTimeField(required=False)


class ActivateReservedPlanSerializer(ScheduledRunSerializer):
    idempotency_key = serializers.CharField(max_length=128, required=False, allow_blank=False)


class AdminEditSerializer(serializers.Serializer):
    tenant_id = serializers.CharField(max_length=64)
    admin_id = serializers.CharField(max_length=64)
    changes = serializers.DictField()
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")

    def validate_changes(self, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise serializers.ValidationError("At least one field must be changed.")
        unknown = sorted(set(value) - ADMIN_EDITABLE_FIELDS)
        if unknown:
            raise serializers.ValidationError(f"Fields cannot be edited: {', '.join(unknown)}.")
        return value


def _call(method: str) -> Callable[[SubscriptionLifecycle, Dict[str, Any]], Any]:
    def invoke(lifecycle: SubscriptionLifecycle, data: Dict[str, Any]):
        return getattr(lifecycle, method)(**data)

    return invoke


OPERATIONS: Dict[str, Tuple[Type[serializers.Serializer], Callable]] = {
    "start_trial": (StartTrialSerializer, _call("start_trial")),
    "start_subscription": (StartSubscriptionSerializer, _call("start_subscription")),
    "convert_trial": (PlanRequestSerializer, _call("convert_trial")),
    "reserve_trial_conversion": (ReservePlanSerializer, _call("reserve_trial_conversion")),
    "activate_reserved_plan": (ActivateReservedPlanSerializer, _call("activate_reserved_plan")),
    "change_plan": (ChangePlanSerializer, _call("change_plan")),
    "schedule_plan_change": (SchedulePlanChangeSerializer, _call("schedule_plan_change")),
    "cancel_pending_plan": (TenantRequestSerializer, _call("cancel_pending_plan")),
    "cancel": (CancelSerializer, _call("cancel")),
    "revert_cancellation": (TenantRequestSerializer, _call("revert_cancellation")),
    "complete_cancellation": (ScheduledRunSerializer, _call("complete_cancellation")),
    "expire": (ScheduledRunSerializer, _call("expire")),
    "resubscribe": (PlanRequestSerializer, _call("resubscribe")),
    "admin_edit": (AdminEditSerializer, _call("admin_edit")),
}


def _plain_errors(errors: Any) -> Any:
    if isinstance(errors, dict):
        return {key: _plain_errors(value) for key, value in errors.items()}
    if isinstance(errors, list):
        return [_plain_errors(item) for item in errors]
    return str(errors)


def failure(error: BillingError) -> Dict[str, Any]:
    return {"success": False, "error": error.to_dict()}


def execute(transition_name: str, payload: Dict[str, Any],
            lifecycle: Optional[SubscriptionLifecycle] = None) -> Dict[str, Any]:
    """Validate ``payload`` and run ``transition_name``; never raises a BillingError."""

    operation = OPERATIONS.get(transition_name)
    if operation is None:
        return failure(
            ValidationError(
                f"Unknown transition '{transition_name}'.",
                code="unknown_transition",
                context={"transition": transition_name},
            )
        )

    serializer_class, invoke = operation
    serializer = serializer_class(data=payload or {})
    if not serializer.is_valid():
        return failure(
            ValidationError(
                "Request payload is invalid.",
                code="invalid_request",
                context={"fields": _plain_errors(serializer.errors)},
            )
        )

    lifecycle = lifecycle or SubscriptionLifecycle()
    data = dict(serializer.validated_data)
    if "card_info" in data:
        data["card_info"] = dict(data["card_info"])
    try:
        result = invoke(lifecycle, data)
    except BillingError as exc:
        logger.info("Billing request %s for %s failed: %s", transition_name, data.get("tenant_id"), exc.code)
        return failure(exc)
    return result.as_dict()
