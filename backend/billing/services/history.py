"""Append-only subscription history ledger.

Each tenant has at most one open segment (``period_end`` is null). A
transition closes it at ``at`` and appends the next segment starting at the
same instant, inside the caller's unit of work.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from billing.constants import PLAN_ORDER, ChangeType, Plan, SubscriptionStatus
from billing.records import HistoryRecord, SubscriptionRecord
from billing.store.base import BillingStore, UnitOfWork


def _segment(subscription: SubscriptionRecord, *, change_type: str, changed_by: str, at: datetime,
             period_end: Optional[datetime] = None, previous: Optional[SubscriptionRecord] = None,
             payment_id: Optional[str] = None, order_id: Optional[str] = None,
             admin_id: Optional[str] = None, note: str = "") -> HistoryRecord:
    return HistoryRecord(
        tenant_id=subscription.tenant_id,
        owner_id=subscription.owner_id,
        email=subscription.email,
        plan=subscription.plan,
        status=subscription.status,
        amount=subscription.amount,
        period_start=at,
        period_end=period_end,
        billing_date=subscription.next_billing_date,
        change_type=str(change_type),
        changed_at=at,
        changed_by=changed_by,
        changed_by_admin_id=admin_id,
        previous_plan=previous.plan if previous else None,
        previous_status=previous.status if previous else None,
        payment_id=payment_id,
        order_id=order_id,
        note=note,
    )


def record_transition(uow: UnitOfWork, subscription: SubscriptionRecord, change_type: str, changed_by: str,
                      at: datetime, **details) -> HistoryRecord:
    """Close the open segment at ``at`` and open the next one at the same instant."""

    uow.close_open_segment(subscription.tenant_id, at)
    return uow.append_segment(
        _segment(subscription, change_type=change_type, changed_by=changed_by, at=at, **details)
    )


def record_terminal(uow: UnitOfWork, subscription: SubscriptionRecord, change_type: str, changed_by: str,
                    at: datetime, **details) -> HistoryRecord:
    """Close the open segment and append a zero-length marker; nothing stays open."""

    uow.close_open_segment(subscription.tenant_id, at)
    return uow.append_segment(
        _segment(subscription, change_type=change_type, changed_by=changed_by, at=at, period_end=at, **details)
    )


def tenant_history(store: BillingStore, tenant_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
    return store.history_for_tenant(tenant_id, limit)


def user_history(store: BillingStore, user_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
    """All segments of every tenant owned by ``user_id``, keyed by owner id rather than email."""

    return store.history_for_user(user_id, limit)


def tenants_history(store: BillingStore, tenant_ids: Iterable[str], limit: Optional[int] = None) -> List[HistoryRecord]:
    return store.history_for_tenants(tenant_ids, limit)


def classify_admin_change(previous_plan: str, new_plan: str, previous_status: str, new_status: str) -> str:
    if new_status != previous_status:
        if new_status == SubscriptionStatus.CANCELED:
            return ChangeType.CANCEL
        if new_status == SubscriptionStatus.EXPIRED:
            return ChangeType.EXPIRE
        if new_status == SubscriptionStatus.ACTIVE and previous_status in (
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.PENDING_CANCEL,
        ):
            return ChangeType.REACTIVATE
    if new_plan != previous_plan:
        old_rank = PLAN_ORDER.get(Plan(previous_plan), 0)
        new_rank = PLAN_ORDER.get(Plan(new_plan), 0)
        if new_rank > old_rank:
            return ChangeType.UPGRADE
        if new_rank < old_rank:
            return ChangeType.DOWNGRADE
    return ChangeType.ADMIN_EDIT
