"""Django ORM implementation of the billing store."""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Dict, Iterable, Optional

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from billing.constants import REFUND_PAYMENT_TYPES, PaymentStatus, TransactionType
from billing.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    DuplicateCardError,
    PersistenceError,
    SubscriptionNotFound,
    TenantLockTimeout,
    ValidationError,
)
from billing.models import (
    CardInstrument,
    Payment,
    Subscription,
    SubscriptionChangeLog,
    SubscriptionHistoryRecord,
)
from billing.records import (
    CardRecord,
    ChangeLogRecord,
    HistoryRecord,
    PaymentRecord,
    SubscriptionRecord,
)
from billing.store.base import BillingStore, UnitOfWork

logger = logging.getLogger(__name__)

LOCK_KEY_TEMPLATE = "billing:tenant-lock:{tenant_id}"
LOCK_POLL_SECONDS = 0.05


def _record_from(instance, record_cls, **overrides):
    values = {f.name: getattr(instance, f.name) for f in fields(record_cls) if f.name not in overrides}
    values.update(overrides)
    return record_cls(**values)


def _model_kwargs(record, *, exclude=()) -> Dict[str, Any]:
    return {f.name: getattr(record, f.name) for f in fields(record) if f.name not in exclude}


def _to_subscription(instance: Subscription) -> SubscriptionRecord:
    return _record_from(instance, SubscriptionRecord)


def _to_payment(instance: Payment) -> PaymentRecord:
    original = instance.original_payment_id
    return _record_from(
        instance,
        PaymentRecord,
        id=str(instance.id),
        original_payment_id=str(original) if original else None,
    )


def _to_history(instance: SubscriptionHistoryRecord) -> HistoryRecord:
    return _record_from(instance, HistoryRecord, id=str(instance.id))


def _to_card(instance: CardInstrument) -> CardRecord:
    return _record_from(instance, CardRecord, id=str(instance.id))


class DjangoUnitOfWork(UnitOfWork):
    """Runs inside ``transaction.atomic``; each write is issued immediately."""

    def create_subscription(self, record):
        if Subscription.objects.filter(pk=record.tenant_id).exists():
            raise ConflictError(
                f"Subscription for tenant {record.tenant_id} already exists.",
                code="subscription_exists",
                context={"tenant_id": record.tenant_id},
            )
        values = _model_kwargs(record, exclude=("version", "created_at", "updated_at"))
        if record.created_at:
            values["created_at"] = record.created_at
        instance = Subscription.objects.create(version=1, **values)
        return _to_subscription(instance)

    def save_subscription(self, record, expected_version):
        values = _model_kwargs(record, exclude=("tenant_id", "version", "created_at", "updated_at"))
        now = timezone.now()
        updated = Subscription.objects.filter(pk=record.tenant_id, version=expected_version).update(
            version=expected_version + 1,
            updated_at=now,
            **values,
        )
        if not updated:
            if not Subscription.objects.filter(pk=record.tenant_id).exists():
                raise SubscriptionNotFound(f"No subscription for tenant {record.tenant_id}.")
            raise ConcurrentModificationError(
                "Subscription changed since it was read.",
                context={"tenant_id": record.tenant_id, "expected": expected_version},
            )
        return _to_subscription(Subscription.objects.get(pk=record.tenant_id))

    def insert_payment(self, record):
        if record.idempotency_key and record.status == PaymentStatus.DONE:
            if Payment.objects.filter(idempotency_key=record.idempotency_key, status=PaymentStatus.DONE).exists():
                raise ConcurrentModificationError(
                    "A payment with this idempotency key was already recorded.",
                    context={"idempotency_key": record.idempotency_key},
                )
        values = _model_kwargs(record, exclude=("id", "created_at"))
        values["id"] = uuid.UUID(record.id)
        if record.original_payment_id:
            values["original_payment_id"] = uuid.UUID(record.original_payment_id)
        if record.created_at:
            values["created_at"] = record.created_at
        instance = Payment.objects.create(**values)
        return _to_payment(instance)

    def apply_refund(self, payment_id, amount):
        try:
            payment = Payment.objects.select_for_update().get(
                pk=payment_id,
                transaction_type=TransactionType.CHARGE,
            )
        except Payment.DoesNotExist as exc:
            raise ValidationError(
                "Refund source must be an existing charge.",
                code="refund_source_invalid",
            ) from exc
        if payment.refunded_amount + amount > payment.amount:
            raise ValidationError(
                "Refund would exceed the charged amount.",
                code="refund_exceeds_charge",
                context={"payment_id": payment_id, "amount": amount, "refunded_amount": payment.refunded_amount},
            )
        payment.refunded_amount += amount
        payment.save(update_fields=["refunded_amount"])
        return _to_payment(payment)

    def close_open_segment(self, tenant_id, period_end):
        closed = None
        open_rows = SubscriptionHistoryRecord.objects.select_for_update().filter(
            tenant_id=tenant_id,
            period_end__isnull=True,
        )
        for row in open_rows:
            row.period_end = period_end
            row.save(update_fields=["period_end"])
            closed = _to_history(row)
        return closed

    def append_segment(self, record):
        if SubscriptionHistoryRecord.objects.filter(tenant_id=record.tenant_id, period_end__isnull=True).exists():
            raise ConflictError(
                "Close the open history segment before appending a new one.",
                code="open_segment_exists",
                context={"tenant_id": record.tenant_id},
            )
        values = _model_kwargs(record, exclude=("id",))
        instance = SubscriptionHistoryRecord.objects.create(id=uuid.UUID(record.id), **values)
        return _to_history(instance)

    def _check_card(self, record: CardRecord) -> None:
        siblings = CardInstrument.objects.filter(tenant_id=record.tenant_id).exclude(pk=record.id)
        if record.number and siblings.filter(card_number=record.number).exists():
            raise DuplicateCardError("Card is already registered.", context={"number": record.number})
        if record.is_primary and siblings.filter(is_primary=True).exists():
            raise ConflictError("Tenant already has a primary card.", code="primary_card_exists")

    def insert_card(self, record):
        self._check_card(record)
        values = _model_kwargs(record, exclude=("id", "created_at", "updated_at"))
        if record.created_at:
            values["created_at"] = record.created_at
        instance = CardInstrument.objects.create(id=uuid.UUID(record.id), card_number=record.number, **values)
        return _to_card(instance)

    def update_card(self, record):
        try:
            instance = CardInstrument.objects.select_for_update().get(pk=record.id)
        except CardInstrument.DoesNotExist as exc:
            raise ValidationError("Card does not exist.", code="card_not_found") from exc
        self._check_card(record)
        instance.billing_key = record.billing_key
        instance.card_info = record.card_info
        instance.card_number = record.number
        instance.alias = record.alias
        instance.is_primary = record.is_primary
        instance.save()
        return _to_card(instance)

    def delete_card(self, card_id):
        CardInstrument.objects.filter(pk=card_id).delete()

    def insert_change_log(self, record):
        values = _model_kwargs(record, exclude=("id",))
        SubscriptionChangeLog.objects.create(id=uuid.UUID(record.id), **values)
        return record


class DjangoBillingStore(BillingStore):
    def get_subscription(self, tenant_id):
        instance = Subscription.objects.filter(pk=tenant_id).first()
        return _to_subscription(instance) if instance else None

    def list_subscriptions(self):
        return [_to_subscription(row) for row in Subscription.objects.order_by("tenant_id")]

    def find_payment_by_idempotency_key(self, key):
        if not key:
            return None
        instance = Payment.objects.filter(idempotency_key=key, status=PaymentStatus.DONE).first()
        return _to_payment(instance) if instance else None

    def latest_refundable_charge(self, tenant_id):
        instance = (
            Payment.objects.filter(
                tenant_id=tenant_id,
                transaction_type=TransactionType.CHARGE,
                status=PaymentStatus.DONE,
            )
            .exclude(type__in=[str(value) for value in REFUND_PAYMENT_TYPES])
            .order_by("-created_at")
            .first()
        )
        return _to_payment(instance) if instance else None

    def get_payment(self, payment_id):
        instance = Payment.objects.filter(pk=payment_id).first()
        return _to_payment(instance) if instance else None

    def list_payments(self, tenant_id):
        return [_to_payment(row) for row in Payment.objects.filter(tenant_id=tenant_id).order_by("-created_at")]

    def list_cards(self, tenant_id):
        return [_to_card(row) for row in CardInstrument.objects.filter(tenant_id=tenant_id).order_by("created_at", "id")]

    def get_card(self, card_id):
        instance = CardInstrument.objects.filter(pk=card_id).first()
        return _to_card(instance) if instance else None

    def open_history_segment(self, tenant_id):
        instance = SubscriptionHistoryRecord.objects.filter(tenant_id=tenant_id, period_end__isnull=True).first()
        return _to_history(instance) if instance else None

    @staticmethod
    def _history(queryset, limit: Optional[int]):
        queryset = queryset.order_by("-changed_at")
        if limit:
            queryset = queryset[:limit]
        return [_to_history(row) for row in queryset]

    def history_for_tenant(self, tenant_id, limit=None):
        return self._history(SubscriptionHistoryRecord.objects.filter(tenant_id=tenant_id), limit)

    def history_for_user(self, user_id, limit=None):
        return self._history(SubscriptionHistoryRecord.objects.filter(owner_id=user_id), limit)

    def history_for_tenants(self, tenant_ids: Iterable[str], limit=None):
        return self._history(SubscriptionHistoryRecord.objects.filter(tenant_id__in=list(tenant_ids)), limit)

    def change_logs(self, tenant_id: str):
        return [
            _record_from(row, ChangeLogRecord, id=str(row.id))
            for row in SubscriptionChangeLog.objects.filter(tenant_id=tenant_id).order_by("-changed_at")
        ]

    @contextmanager
    def tenant_lock(self, tenant_id):
        key = LOCK_KEY_TEMPLATE.format(tenant_id=tenant_id)
        token = uuid.uuid4().hex
        lease = int(getattr(settings, "BILLING_TENANT_LOCK_TIMEOUT_SECONDS", 30))
        wait = float(getattr(settings, "BILLING_TENANT_LOCK_WAIT_SECONDS", 5))
        deadline = time.monotonic() + wait
        while not cache.add(key, token, timeout=lease):
            if time.monotonic() >= deadline:
                logger.warning("Tenant lock busy for %s after %.1fs", tenant_id, wait)
                raise TenantLockTimeout(
                    f"Another billing operation is running for tenant {tenant_id}.",
                    context={"tenant_id": tenant_id},
                )
            time.sleep(LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            if cache.get(key) == token:
                cache.delete(key)

    @contextmanager
    def atomic(self):
        try:
            with transaction.atomic():
                yield DjangoUnitOfWork()
        except IntegrityError as exc:
            logger.error("Billing write rejected by a database constraint: %s", exc)
            raise ConcurrentModificationError(
                "Billing data changed concurrently; retry the operation.",
                context={"detail": str(exc)},
            ) from exc
        except DatabaseError as exc:
            logger.error("Billing write failed: %s", exc)
            raise PersistenceError("Could not persist billing changes.", context={"detail": str(exc)}) from exc
