import pytest

from billing.constants import Plan, SubscriptionStatus
from billing.exceptions import AuthorizationError, InvalidTransition, ValidationError
from billing.records import SubscriptionRecord
from billing.services.state_machine import (
    TRANSITIONS,
    Transition,
    cancel_target_status,
    ensure_owner,
    ensure_transition,
    is_allowed,
    parse_plan,
    target_status,
)


def _subscription(status, plan="basic"):
    return SubscriptionRecord(
        tenant_id="tenant-1",
        owner_id="owner-1",
        plan=plan,
        status=status,
        amount=39000,
        base_amount=39000,
        amount_period_days=31,
    )


def test_every_transition_has_a_row():
    assert set(TRANSITIONS) == set(Transition)


@pytest.mark.parametrize(
    "status,transition,expected",
    [
        ("trial", Transition.CONVERT_TRIAL, "active"),
        ("trial", Transition.RESERVE_TRIAL_CONVERSION, "trial"),
        ("active", Transition.CHANGE_PLAN, "active"),
        ("active", Transition.CANCEL_SCHEDULED, "pending_cancel"),
        ("pending_cancel", Transition.REVERT_CANCELLATION, "active"),
        ("pending_cancel", Transition.COMPLETE_CANCELLATION, "canceled"),
        ("canceled", Transition.RESUBSCRIBE, "active"),
        ("expired", Transition.RESUBSCRIBE, "active"),
        ("trial", Transition.EXPIRE, "expired"),
        ("active", Transition.SCHEDULE_PLAN_CHANGE, "active"),
        ("pending_cancel", Transition.ADMIN_EDIT, "pending_cancel"),
    ],
)
def test_target_status(status, transition, expected):
    assert target_status(status, transition) == expected


@pytest.mark.parametrize(
    "status,transition",
    [
        ("trial", Transition.CHANGE_PLAN),
        ("pending_cancel", Transition.CHANGE_PLAN),
        ("active", Transition.RESUBSCRIBE),
        ("canceled", Transition.CANCEL_IMMEDIATE),
        ("expired", Transition.CANCEL_SCHEDULED),
        ("active", Transition.EXPIRE),
        (None, Transition.CHANGE_PLAN),
        ("active", Transition.START_TRIAL),
    ],
)
def test_disallowed_transitions_raise_conflict(status, transition):
    with pytest.raises(InvalidTransition) as exc:
        ensure_transition(status, transition)

    assert exc.value.code == "invalid_transition"
    assert exc.value.category == "conflict"
    assert exc.value.context["transition"] == transition.value


def test_creation_transitions_need_no_subscription():
    assert is_allowed(None, Transition.START_TRIAL)
    assert is_allowed(None, Transition.START_SUBSCRIPTION)
    assert not is_allowed("trial", Transition.START_SUBSCRIPTION)


def test_past_due_is_not_a_member_of_the_table():
    assert "past_due" not in SubscriptionStatus.values
    assert not any(is_allowed("past_due", transition) for transition in Transition if transition != Transition.ADMIN_EDIT)
    assert not is_allowed("past_due", Transition.ADMIN_EDIT)


def test_immediate_cancel_of_trial_expires():
    assert cancel_target_status(_subscription("trial", plan="trial")) == "expired"
    assert cancel_target_status(_subscription("active")) == "canceled"
    assert cancel_target_status(_subscription("pending_cancel")) == "canceled"


def test_ensure_owner_rejects_other_user():
    subscription = _subscription("active")

    ensure_owner(subscription, None)
    ensure_owner(subscription, "owner-1")
    with pytest.raises(AuthorizationError) as exc:
        ensure_owner(subscription, "intruder")

    assert exc.value.code == "forbidden"


def test_parse_plan():
    assert parse_plan("business") == Plan.BUSINESS
    assert parse_plan("trial", allow_trial=True) == Plan.TRIAL

    with pytest.raises(ValidationError) as exc:
        parse_plan("platinum")
    assert exc.value.code == "invalid_plan"

    with pytest.raises(ValidationError):
        parse_plan("trial")
