"""Exhaustive transition table for subscription statuses."""
from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional, Tuple

from billing.constants import Plan, SubscriptionStatus
from billing.exceptions import AuthorizationError, InvalidTransition, ValidationError
from billing.records import SubscriptionRecord

S = SubscriptionStatus


def _states(*statuses) -> FrozenSet[Optional[str]]:
    return frozenset(None if status is None else str(status) for status in statuses)


class Transition(str, enum.Enum):
    START_TRIAL = "start_trial"
    START_SUBSCRIPTION = "start_subscription"
    CONVERT_TRIAL = "convert_trial"
    RESERVE_TRIAL_CONVERSION = "reserve_trial_conversion"
    ACTIVATE_RESERVED_PLAN = "activate_reserved_plan"
    CHANGE_PLAN = "change_plan"
    SCHEDULE_PLAN_CHANGE = "schedule_plan_change"
    CANCEL_PENDING_PLAN = "cancel_pending_plan"
    CANCEL_SCHEDULED = "cancel_scheduled"
    CANCEL_IMMEDIATE = "cancel_immediate"
    REVERT_CANCELLATION = "revert_cancellation"
    COMPLETE_CANCELLATION = "complete_cancellation"
    EXPIRE = "expire"
    RESUBSCRIBE = "resubscribe"
    ADMIN_EDIT = "admin_edit"


# None as a source means "no subscription yet"; None as a target keeps the status.
TRANSITIONS: Dict[Transition, Tuple[FrozenSet[Optional[str]], Optional[str]]] = {
    Transition.START_TRIAL: (_states(None), S.TRIAL),
    Transition.START_SUBSCRIPTION: (_states(None), S.ACTIVE),
    Transition.CONVERT_TRIAL: (_states(S.TRIAL), S.ACTIVE),
    Transition.RESERVE_TRIAL_CONVERSION: (_states(S.TRIAL), S.TRIAL),
    Transition.ACTIVATE_RESERVED_PLAN: (_states(S.TRIAL), S.ACTIVE),
    Transition.CHANGE_PLAN: (_states(S.ACTIVE), S.ACTIVE),
    Transition.SCHEDULE_PLAN_CHANGE: (_states(S.ACTIVE, S.TRIAL), None),
    Transition.CANCEL_PENDING_PLAN: (_states(S.ACTIVE, S.TRIAL), None),
    Transition.CANCEL_SCHEDULED: (_states(S.ACTIVE, S.TRIAL, S.PENDING_CANCEL), S.PENDING_CANCEL),
    # trials end as expired rather than canceled; see cancel_target_status
    Transition.CANCEL_IMMEDIATE: (_states(S.ACTIVE, S.TRIAL, S.PENDING_CANCEL), S.CANCELED),
    Transition.REVERT_CANCELLATION: (_states(S.PENDING_CANCEL), S.ACTIVE),
    Transition.COMPLETE_CANCELLATION: (_states(S.PENDING_CANCEL), S.CANCELED),
    Transition.EXPIRE: (_states(S.TRIAL, S.CANCELED), S.EXPIRED),
    Transition.RESUBSCRIBE: (_states(S.CANCELED, S.EXPIRED), S.ACTIVE),
    Transition.ADMIN_EDIT: (_states(*S.values), None),
}

_missing = set(Transition) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Transition table is missing rows for: {sorted(t.value for t in _missing)}")

# Cancelling an already-ended subscription is answered with a no-op.
CANCEL_NOOP_STATUSES = _states(S.CANCELED, S.EXPIRED)


def is_allowed(status: Optional[str], transition: Transition) -> bool:
    sources, _ = TRANSITIONS[transition]
    return status in sources


def ensure_transition(status: Optional[str], transition: Transition) -> None:
    if not is_allowed(status, transition):
        raise InvalidTransition(
            f"Cannot {transition.value.replace('_', ' ')} from status '{status}'.",
            context={"status": status, "transition": transition.value},
        )


def target_status(status: Optional[str], transition: Transition) -> Optional[str]:
    ensure_transition(status, transition)
    _, target = TRANSITIONS[transition]
    return status if target is None else str(target)


def cancel_target_status(subscription: SubscriptionRecord) -> str:
    """Immediate cancellation ends a paid subscription as canceled and a trial as expired."""

    if subscription.status == S.TRIAL or subscription.plan == Plan.TRIAL:
        return str(S.EXPIRED)
    return target_status(subscription.status, Transition.CANCEL_IMMEDIATE)


def ensure_owner(subscription: SubscriptionRecord, owner_id: Optional[str]) -> None:
    if owner_id is not None and subscription.owner_id and subscription.owner_id != owner_id:
        raise AuthorizationError(
            "Subscription belongs to another user.",
            context={"tenant_id": subscription.tenant_id},
        )


def parse_plan(value: str, *, allow_trial: bool = False) -> Plan:
    try:
        plan = Plan(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown plan '{value}'.", code="invalid_plan", context={"plan": value}) from exc
    if plan == Plan.TRIAL and not allow_trial:
        raise ValidationError("The trial plan cannot be purchased.", code="invalid_plan", context={"plan": value})
    return plan
