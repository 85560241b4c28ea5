import pytest

from billing.contract import OPERATIONS, execute


def test_every_lifecycle_entry_point_is_exposed():
    assert set(OPERATIONS) == {
        "start_trial",
        "start_subscription",
        "convert_trial",
        "reserve_trial_conversion",
        "activate_reserved_plan",
        "change_plan",
        "schedule_plan_change",
        "cancel_pending_plan",
        "cancel",
        "revert_cancellation",
        "complete_cancellation",
        "expire",
        "resubscribe",
        "admin_edit",
    }


def test_successful_change_returns_plain_dict(lifecycle, seed_subscription):
    seed_subscription()

    response = execute(
        "change_plan",
        {"tenant_id": "tenant-1", "new_plan": "business", "idempotency_key": "upgrade-1"},
        lifecycle=lifecycle,
    )

    assert response["success"] is True
    assert response["charged_amount"] == 70258
    assert response["refunded_amount"] == 26419
    assert response["subscription"]["plan"] == "business"
    assert isinstance(response["subscription"]["next_billing_date"], str)


def test_start_trial_through_contract(store, lifecycle):
    response = execute(
        "start_trial",
        {"tenant_id": "tenant-9", "owner_id": "owner-9", "email": "owner@example.com"},
        lifecycle=lifecycle,
    )

    assert response["success"] is True
    assert response["subscription"]["status"] == "trial"
    assert store.get_subscription("tenant-9") is not None


@pytest.mark.parametrize(
    "transition,payload,field",
    [
        ("change_plan", {"tenant_id": "tenant-1", "new_plan": "gold"}, "new_plan"),
        ("change_plan", {"tenant_id": "tenant-1", "new_plan": "trial"}, "new_plan"),
        ("cancel", {"tenant_id": "tenant-1", "mode": "later"}, "mode"),
        ("start_trial", {"tenant_id": "tenant-1", "owner_id": "o", "email": "not-an-email"}, "email"),
        ("admin_edit", {"tenant_id": "tenant-1", "admin_id": "a", "changes": {"version": 9}}, "changes"),
        ("admin_edit", {"tenant_id": "tenant-1", "admin_id": "a", "changes": {}}, "changes"),
    ],
)
def test_invalid_payload_is_reported_per_field(lifecycle, transition, payload, field):
    response = execute(transition, payload, lifecycle=lifecycle)

    assert response["success"] is False
    assert response["error"]["code"] == "invalid_request"
    assert response["error"]["category"] == "validation"
    assert field in response["error"]["context"]["fields"]


def test_unknown_transition(lifecycle):
    response = execute("pause", {"tenant_id": "tenant-1"}, lifecycle=lifecycle)

    assert response["success"] is False
    assert response["error"]["code"] == "unknown_transition"


def test_billing_errors_become_failure_dicts(lifecycle):
    response = execute("cancel", {"tenant_id": "missing", "mode": "immediate"}, lifecycle=lifecycle)

    assert response == {
        "success": False,
        "error": {
            "category": "validation",
            "code": "subscription_not_found",
            "message": response["error"]["message"],
            "retryable": False,
            "context": response["error"]["context"],
        },
    }


def test_conflicts_are_flagged_retryable_only_when_they_are(lifecycle, seed_subscription):
    seed_subscription()

    response = execute("revert_cancellation", {"tenant_id": "tenant-1"}, lifecycle=lifecycle)

    assert response["success"] is False
    assert response["error"]["code"] == "invalid_transition"
    assert response["error"]["category"] == "conflict"
    assert response["error"]["retryable"] is False


def test_already_ended_cancel_is_a_successful_noop(lifecycle, seed_subscription):
    seed_subscription(status="canceled")

    response = execute("cancel", {"tenant_id": "tenant-1", "mode": "scheduled"}, lifecycle=lifecycle)

    assert response["success"] is True
    assert response["noop"] is True
