from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from billing.constants import ChangeType
from billing.exceptions import ConflictError
from billing.records import HistoryRecord
from billing.services import history

KST = ZoneInfo("Asia/Seoul")
T0 = datetime(2025, 3, 1, 9, 0, tzinfo=KST)


def test_record_transition_closes_and_opens_at_same_instant(store, seed_subscription):
    subscription = seed_subscription()
    at = T0 + timedelta(days=9)

    with store.atomic() as uow:
        history.record_transition(uow, subscription, ChangeType.UPGRADE, "user", at)

    closed, opened = sorted(store.history_for_tenant("tenant-1"), key=lambda row: row.period_start)
    assert closed.period_end == at
    assert opened.period_start == at
    assert opened.is_open
    assert store.open_history_segment("tenant-1").id == opened.id


def test_record_terminal_leaves_nothing_open(store, seed_subscription):
    subscription = seed_subscription()
    at = T0 + timedelta(days=4)

    with store.atomic() as uow:
        marker = history.record_terminal(uow, subscription, ChangeType.CANCEL, "user", at)

    assert marker.period_start == marker.period_end == at
    assert store.open_history_segment("tenant-1") is None


def test_append_with_open_segment_is_rejected(store, seed_subscription):
    subscription = seed_subscription()

    with pytest.raises(ConflictError) as exc:
        with store.atomic() as uow:
            uow.append_segment(
                HistoryRecord(
                    tenant_id=subscription.tenant_id,
                    plan="basic",
                    status="active",
                    amount=39000,
                    period_start=T0,
                    change_type=ChangeType.ADMIN_EDIT,
                    changed_at=T0,
                )
            )

    assert exc.value.code == "open_segment_exists"
    assert len(store.history_for_tenant("tenant-1")) == 1


def test_queries_are_newest_first_and_grouped_by_owner(store, seed_subscription):
    first = seed_subscription("tenant-1", owner_id="owner-1")
    seed_subscription("tenant-2", owner_id="owner-1", email="renamed@example.com")
    seed_subscription("tenant-3", owner_id="owner-9")
    with store.atomic() as uow:
        history.record_transition(uow, first, ChangeType.UPGRADE, "user", T0 + timedelta(days=3))

    tenant_rows = history.tenant_history(store, "tenant-1")
    assert [row.change_type for row in tenant_rows] == ["upgrade", "new"]
    assert len(history.tenant_history(store, "tenant-1", limit=1)) == 1

    owned = history.user_history(store, "owner-1")
    assert {row.tenant_id for row in owned} == {"tenant-1", "tenant-2"}
    assert owned[0].changed_at == T0 + timedelta(days=3)

    combined = history.tenants_history(store, ["tenant-2", "tenant-3"])
    assert {row.tenant_id for row in combined} == {"tenant-2", "tenant-3"}


@pytest.mark.parametrize(
    "prev_plan,new_plan,prev_status,new_status,expected",
    [
        ("basic", "business", "active", "active", "upgrade"),
        ("business", "basic", "active", "active", "downgrade"),
        ("trial", "basic", "trial", "trial", "upgrade"),
        ("basic", "basic", "active", "canceled", "cancel"),
        ("basic", "basic", "trial", "expired", "expire"),
        ("basic", "basic", "canceled", "active", "reactivate"),
        ("basic", "basic", "active", "pending_cancel", "admin_edit"),
        ("basic", "basic", "active", "active", "admin_edit"),
    ],
)
def test_classify_admin_change(prev_plan, new_plan, prev_status, new_status, expected):
    assert history.classify_admin_change(prev_plan, new_plan, prev_status, new_status) == expected
