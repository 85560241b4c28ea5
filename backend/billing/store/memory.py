"""In-process store with the same transactional contract as the ORM store."""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from django.conf import settings
from django.utils import timezone

from billing.constants import REFUND_PAYMENT_TYPES, PaymentStatus, TransactionType
from billing.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    DuplicateCardError,
    SubscriptionNotFound,
    TenantLockTimeout,
    ValidationError,
)
from billing.records import (
    CardRecord,
    ChangeLogRecord,
    HistoryRecord,
    PaymentRecord,
    SubscriptionRecord,
)
from billing.store.base import BillingStore, UnitOfWork


@dataclass
class _Tables:
    subscriptions: Dict[str, SubscriptionRecord] = field(default_factory=dict)
    payments: Dict[str, PaymentRecord] = field(default_factory=dict)
    history: Dict[str, HistoryRecord] = field(default_factory=dict)
    cards: Dict[str, CardRecord] = field(default_factory=dict)
    change_logs: Dict[str, ChangeLogRecord] = field(default_factory=dict)


def _newest_first(rows, attr: str) -> list:
    # ties keep insertion order, so the later write wins
    ordered = sorted(rows, key=lambda row: getattr(row, attr))
    ordered.reverse()
    return ordered


def _open_segments(tables: _Tables, tenant_id: str) -> List[HistoryRecord]:
    return [row for row in tables.history.values() if row.tenant_id == tenant_id and row.is_open]


def _op_create_subscription(tables: _Tables, record: SubscriptionRecord) -> SubscriptionRecord:
    if record.tenant_id in tables.subscriptions:
        raise ConflictError(
            f"Subscription for tenant {record.tenant_id} already exists.",
            code="subscription_exists",
            context={"tenant_id": record.tenant_id},
        )
    now = timezone.now()
    stored = replace(record, version=1, created_at=record.created_at or now, updated_at=now)
    tables.subscriptions[record.tenant_id] = stored
    return stored


def _op_save_subscription(tables: _Tables, record: SubscriptionRecord, expected_version: int) -> SubscriptionRecord:
    current = tables.subscriptions.get(record.tenant_id)
    if current is None:
        raise SubscriptionNotFound(f"No subscription for tenant {record.tenant_id}.")
    if current.version != expected_version:
        raise ConcurrentModificationError(
            "Subscription changed since it was read.",
            context={"tenant_id": record.tenant_id, "expected": expected_version, "actual": current.version},
        )
    stored = replace(record, version=expected_version + 1, updated_at=timezone.now())
    tables.subscriptions[record.tenant_id] = stored
    return stored


def _op_insert_payment(tables: _Tables, record: PaymentRecord) -> PaymentRecord:
    if record.idempotency_key and record.status == PaymentStatus.DONE:
        for row in tables.payments.values():
            if row.idempotency_key == record.idempotency_key and row.status == PaymentStatus.DONE:
                raise ConcurrentModificationError(
                    "A payment with this idempotency key was already recorded.",
                    context={"idempotency_key": record.idempotency_key},
                )
    stored = replace(record, created_at=record.created_at or timezone.now())
    tables.payments[stored.id] = stored
    return stored


def _op_apply_refund(tables: _Tables, payment_id: str, amount: int) -> PaymentRecord:
    payment = tables.payments.get(payment_id)
    if payment is None or payment.transaction_type != TransactionType.CHARGE:
        raise ValidationError("Refund source must be an existing charge.", code="refund_source_invalid")
    if payment.refunded_amount + amount > payment.amount:
        raise ValidationError(
            "Refund would exceed the charged amount.",
            code="refund_exceeds_charge",
            context={"payment_id": payment_id, "amount": amount, "refunded_amount": payment.refunded_amount},
        )
    stored = replace(payment, refunded_amount=payment.refunded_amount + amount)
    tables.payments[payment_id] = stored
    return stored


def _op_close_open_segment(tables: _Tables, tenant_id: str, period_end: datetime) -> Optional[HistoryRecord]:
    closed = None
    for row in _open_segments(tables, tenant_id):
        closed = replace(row, period_end=period_end)
        tables.history[row.id] = closed
    return closed


def _op_append_segment(tables: _Tables, record: HistoryRecord) -> HistoryRecord:
    if _open_segments(tables, record.tenant_id):
        raise ConflictError(
            "Close the open history segment before appending a new one.",
            code="open_segment_exists",
            context={"tenant_id": record.tenant_id},
        )
    tables.history[record.id] = replace(record)
    return record


def _check_card_constraints(tables: _Tables, record: CardRecord) -> None:
    for row in tables.cards.values():
        if row.id == record.id or row.tenant_id != record.tenant_id:
            continue
        if row.number and row.number == record.number:
            raise DuplicateCardError("Card is already registered.", context={"number": record.number})
        if row.is_primary and record.is_primary:
            raise ConflictError("Tenant already has a primary card.", code="primary_card_exists")


def _op_insert_card(tables: _Tables, record: CardRecord) -> CardRecord:
    _check_card_constraints(tables, record)
    now = timezone.now()
    stored = replace(record, created_at=record.created_at or now, updated_at=now)
    tables.cards[stored.id] = stored
    return stored


def _op_update_card(tables: _Tables, record: CardRecord) -> CardRecord:
    if record.id not in tables.cards:
        raise ValidationError("Card does not exist.", code="card_not_found")
    _check_card_constraints(tables, record)
    stored = replace(record, updated_at=timezone.now())
    tables.cards[stored.id] = stored
    return stored


def _op_delete_card(tables: _Tables, card_id: str) -> None:
    tables.cards.pop(card_id, None)


def _op_insert_change_log(tables: _Tables, record: ChangeLogRecord) -> ChangeLogRecord:
    tables.change_logs[record.id] = replace(record)
    return record


class _MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryBillingStore") -> None:
        self._store = store
        self._working = store._snapshot()
        self._ops: List[Callable[[_Tables], object]] = []

    def _run(self, op, *args):
        result = op(self._working, *args)
        self._ops.append(lambda tables: op(tables, *args))
        return copy.deepcopy(result)

    def create_subscription(self, record):
        return self._run(_op_create_subscription, copy.deepcopy(record))

    def save_subscription(self, record, expected_version):
        return self._run(_op_save_subscription, copy.deepcopy(record), expected_version)

    def insert_payment(self, record):
        return self._run(_op_insert_payment, copy.deepcopy(record))

    def apply_refund(self, payment_id, amount):
        return self._run(_op_apply_refund, payment_id, amount)

    def close_open_segment(self, tenant_id, period_end):
        return self._run(_op_close_open_segment, tenant_id, period_end)

    def append_segment(self, record):
        return self._run(_op_append_segment, copy.deepcopy(record))

    def insert_card(self, record):
        return self._run(_op_insert_card, copy.deepcopy(record))

    def update_card(self, record):
        return self._run(_op_update_card, copy.deepcopy(record))

    def delete_card(self, card_id):
        return self._run(_op_delete_card, card_id)

    def insert_change_log(self, record):
        return self._run(_op_insert_change_log, copy.deepcopy(record))

    def commit(self) -> None:
        self._store._commit(self._ops)


class InMemoryBillingStore(BillingStore):
    """Dict-backed store; staged writes are replayed against live data on commit."""

    def __init__(self) -> None:
        self._tables = _Tables()
        self._guard = threading.RLock()
        self._tenant_locks: Dict[str, threading.Lock] = {}
        self.commit_count = 0

    def _snapshot(self) -> _Tables:
        with self._guard:
            return copy.deepcopy(self._tables)

    def _commit(self, ops) -> None:
        with self._guard:
            staged = copy.deepcopy(self._tables)
            for op in ops:
                op(staged)
            self._tables = staged
            self.commit_count += 1

    def _read(self, getter):
        with self._guard:
            return copy.deepcopy(getter(self._tables))

    def get_subscription(self, tenant_id):
        return self._read(lambda t: t.subscriptions.get(tenant_id))

    def list_subscriptions(self):
        return self._read(lambda t: sorted(t.subscriptions.values(), key=lambda row: row.tenant_id))

    def find_payment_by_idempotency_key(self, key):
        if not key:
            return None

        def _find(tables):
            for row in tables.payments.values():
                if row.idempotency_key == key and row.status == PaymentStatus.DONE:
                    return row
            return None

        return self._read(_find)

    def latest_refundable_charge(self, tenant_id):
        def _find(tables):
            rows = [
                row
                for row in tables.payments.values()
                if row.tenant_id == tenant_id
                and row.transaction_type == TransactionType.CHARGE
                and row.status == PaymentStatus.DONE
                and row.type not in REFUND_PAYMENT_TYPES
            ]
            rows = _newest_first(rows, "created_at")
            return rows[0] if rows else None

        return self._read(_find)

    def get_payment(self, payment_id):
        return self._read(lambda t: t.payments.get(payment_id))

    def list_payments(self, tenant_id):
        return self._read(
            lambda t: _newest_first(
                (row for row in t.payments.values() if row.tenant_id == tenant_id), "created_at"
            )
        )

    def list_cards(self, tenant_id):
        return self._read(
            lambda t: sorted(
                (row for row in t.cards.values() if row.tenant_id == tenant_id),
                key=lambda row: (row.created_at, row.id),
            )
        )

    def get_card(self, card_id):
        return self._read(lambda t: t.cards.get(card_id))

    def open_history_segment(self, tenant_id):
        return self._read(lambda t: next(iter(_open_segments(t, tenant_id)), None))

    def _history(self, predicate, limit):
        def _select(tables):
            rows = _newest_first((row for row in tables.history.values() if predicate(row)), "changed_at")
            return rows[:limit] if limit else rows

        return self._read(_select)

    def history_for_tenant(self, tenant_id, limit=None):
        return self._history(lambda row: row.tenant_id == tenant_id, limit)

    def history_for_user(self, user_id, limit=None):
        return self._history(lambda row: row.owner_id == user_id, limit)

    def history_for_tenants(self, tenant_ids: Iterable[str], limit=None):
        wanted = set(tenant_ids)
        return self._history(lambda row: row.tenant_id in wanted, limit)

    def change_logs(self, tenant_id: str) -> List[ChangeLogRecord]:
        return self._read(
            lambda t: _newest_first(
                (row for row in t.change_logs.values() if row.tenant_id == tenant_id), "changed_at"
            )
        )

    @contextmanager
    def tenant_lock(self, tenant_id):
        with self._guard:
            lock = self._tenant_locks.setdefault(tenant_id, threading.Lock())
        wait = float(getattr(settings, "BILLING_TENANT_LOCK_WAIT_SECONDS", 5))
        if not lock.acquire(timeout=wait):
            raise TenantLockTimeout(
                f"Another billing operation is running for tenant {tenant_id}.",
                context={"tenant_id": tenant_id},
            )
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def atomic(self):
        uow = _MemoryUnitOfWork(self)
        yield uow
        uow.commit()
