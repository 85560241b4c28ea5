"""Store interface the billing services depend on.

Services never touch the ORM directly; they receive a :class:`BillingStore`
so that unit tests can run against the in-memory implementation.
"""
from __future__ import annotations

import abc
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, List, Optional

from django.conf import settings
from django.utils.module_loading import import_string

from billing.records import (
    CardRecord,
    ChangeLogRecord,
    HistoryRecord,
    PaymentRecord,
    SubscriptionRecord,
)


class UnitOfWork(abc.ABC):
    """Writes of one logical operation; they commit together or not at all."""

    @abc.abstractmethod
    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        ...

    @abc.abstractmethod
    def save_subscription(self, record: SubscriptionRecord, expected_version: int) -> SubscriptionRecord:
        """Persist ``record`` if the stored version still equals ``expected_version``."""

    @abc.abstractmethod
    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        ...

    @abc.abstractmethod
    def apply_refund(self, payment_id: str, amount: int) -> PaymentRecord:
        """Add ``amount`` to the source charge's ``refunded_amount``."""

    @abc.abstractmethod
    def close_open_segment(self, tenant_id: str, period_end: datetime) -> Optional[HistoryRecord]:
        ...

    @abc.abstractmethod
    def append_segment(self, record: HistoryRecord) -> HistoryRecord:
        ...

    @abc.abstractmethod
    def insert_card(self, record: CardRecord) -> CardRecord:
        ...

    @abc.abstractmethod
    def update_card(self, record: CardRecord) -> CardRecord:
        ...

    @abc.abstractmethod
    def delete_card(self, card_id: str) -> None:
        ...

    @abc.abstractmethod
    def insert_change_log(self, record: ChangeLogRecord) -> ChangeLogRecord:
        ...


class BillingStore(abc.ABC):
    @abc.abstractmethod
    def get_subscription(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        ...

    @abc.abstractmethod
    def list_subscriptions(self) -> List[SubscriptionRecord]:
        ...

    @abc.abstractmethod
    def find_payment_by_idempotency_key(self, key: str) -> Optional[PaymentRecord]:
        """Return the completed payment row recorded under ``key``."""

    @abc.abstractmethod
    def latest_refundable_charge(self, tenant_id: str) -> Optional[PaymentRecord]:
        """Most recent completed charge row that is not itself a refund."""

    @abc.abstractmethod
    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        ...

    @abc.abstractmethod
    def list_payments(self, tenant_id: str) -> List[PaymentRecord]:
        ...

    @abc.abstractmethod
    def list_cards(self, tenant_id: str) -> List[CardRecord]:
        """Cards ordered oldest first."""

    @abc.abstractmethod
    def get_card(self, card_id: str) -> Optional[CardRecord]:
        ...

    @abc.abstractmethod
    def open_history_segment(self, tenant_id: str) -> Optional[HistoryRecord]:
        ...

    @abc.abstractmethod
    def history_for_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        ...

    @abc.abstractmethod
    def history_for_user(self, user_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        ...

    @abc.abstractmethod
    def history_for_tenants(self, tenant_ids: Iterable[str], limit: Optional[int] = None) -> List[HistoryRecord]:
        ...

    @abc.abstractmethod
    def tenant_lock(self, tenant_id: str) -> AbstractContextManager:
        """Serialise mutating operations of one tenant.

        Raises :class:`billing.exceptions.TenantLockTimeout` when the lock
        cannot be obtained in time.
        """

    @abc.abstractmethod
    def atomic(self) -> AbstractContextManager:
        """Yield a :class:`UnitOfWork` whose writes commit on clean exit."""


def get_default_store() -> BillingStore:
    store_path = getattr(settings, "BILLING_STORE_CLASS", "billing.store.django_store.DjangoBillingStore")
    return import_string(store_path)()
