from datetime import datetime, timedelta
from itertools import count
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

from billing.constants import (
    DEFAULT_PLAN_PRICES,
    ChangeType,
    PaymentStatus,
    PaymentType,
    SubscriptionStatus,
    TransactionType,
)
from billing.records import CardRecord, HistoryRecord, PaymentRecord, SubscriptionRecord
from billing.services.gateway import ChargeResult, PaymentGateway, PaymentSnapshot, RefundResult
from billing.services.payment_orchestrator import PaymentOrchestrator
from billing.services.subscription_lifecycle import SubscriptionLifecycle
from billing.store.memory import InMemoryBillingStore

KST = ZoneInfo("Asia/Seoul")


class FakeGateway(PaymentGateway):
    """Records every call and keeps per-payment cancel totals like the real gateway."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.charge_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self._sequence = count(1)

    def register_payment(self, payment_key: str, total_amount: int, canceled: int = 0) -> None:
        cancels = [{"cancelAmount": canceled}] if canceled else []
        self.payments[payment_key] = {"total": total_amount, "cancels": cancels}

    def calls_of(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def charge(self, *, billing_key, amount, order_id, order_name, payer, idempotency_key=None):
        self.calls.append(("charge", billing_key, amount, order_id, idempotency_key))
        if self.charge_error is not None:
            raise self.charge_error
        payment_key = f"pk_charge_{next(self._sequence)}"
        self.register_payment(payment_key, amount)
        return ChargeResult(
            payment_key=payment_key,
            status="DONE",
            method="card",
            card_info={"number": "4330****1234"},
            receipt_url=f"https://receipts.example.com/{payment_key}",
        )

    def refund(self, *, payment_key, reason, amount, idempotency_key=None):
        self.calls.append(("refund", payment_key, amount, reason, idempotency_key))
        if self.refund_error is not None:
            raise self.refund_error
        self.payments.setdefault(payment_key, {"total": amount, "cancels": []})["cancels"].append(
            {"cancelAmount": amount}
        )
        return RefundResult(payment_key=payment_key, status="CANCELED")

    def get_payment(self, payment_key):
        self.calls.append(("get_payment", payment_key))
        payment = self.payments.get(payment_key, {"total": 0, "cancels": []})
        return PaymentSnapshot(
            payment_key=payment_key,
            total_amount=payment["total"],
            cancels=list(payment["cancels"]),
        )


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def billing_settings(settings):
    settings.BILLING_PLAN_PRICES = dict(DEFAULT_PLAN_PRICES)
    settings.BILLING_TIME_ZONE = "Asia/Seoul"
    settings.BILLING_TRIAL_DAYS = 30
    settings.BILLING_MAX_CARDS = 5
    settings.BILLING_ORDER_NAME_PREFIX = "Portal"
    settings.BILLING_NOTIFICATIONS_ENABLED = False
    settings.BILLING_TENANT_LOCK_WAIT_SECONDS = 0.2
    return settings


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    # Day 10 of a 31-day March cycle in the billing zone.
    return FixedClock(datetime(2025, 3, 10, 12, 0, tzinfo=KST))


@pytest.fixture
def orchestrator(store, gateway, clock):
    return PaymentOrchestrator(store, gateway, clock=clock)


@pytest.fixture
def lifecycle(store, gateway, clock):
    return SubscriptionLifecycle(store=store, gateway=gateway, clock=clock)


@pytest.fixture
def seed_subscription(store, gateway):
    """Persist an active subscription with its paid charge, open segment and primary card."""

    def _seed(tenant_id: str = "tenant-1", *, plan: str = "basic", amount: int = 39000,
              status: str = SubscriptionStatus.ACTIVE, period_start: Optional[datetime] = None,
              next_billing: Optional[datetime] = None, with_card: bool = True, with_charge: bool = True,
              **overrides) -> SubscriptionRecord:
        period_start = period_start or datetime(2025, 3, 1, 9, 0, tzinfo=KST)
        next_billing = next_billing or datetime(2025, 4, 1, 9, 0, tzinfo=KST)
        subscription = SubscriptionRecord(
            tenant_id=tenant_id,
            owner_id=overrides.pop("owner_id", "owner-1"),
            email=overrides.pop("email", "owner@example.com"),
            brand_name=overrides.pop("brand_name", "Acme"),
            plan=plan,
            status=str(status),
            amount=amount,
            base_amount=overrides.pop("base_amount", amount),
            amount_period_days=overrides.pop("amount_period_days", 31),
            current_period_start=period_start,
            current_period_end=next_billing,
            next_billing_date=next_billing,
            **overrides,
        )
        card = None
        if with_card:
            card = CardRecord(
                tenant_id=tenant_id,
                owner_id=subscription.owner_id,
                billing_key=f"bk_{tenant_id}",
                card_info={"company": "Shinhan", "number": "4330****1234", "card_type": "credit"},
                is_primary=True,
            )
            subscription.billing_key = card.billing_key
            subscription.card_info = dict(card.card_info)
            subscription.primary_card_id = card.id

        with store.atomic() as uow:
            if card is not None:
                uow.insert_card(card)
            created = uow.create_subscription(subscription)
            if with_charge and amount > 0:
                payment_key = f"pk_seed_{tenant_id}"
                uow.insert_payment(
                    PaymentRecord(
                        tenant_id=tenant_id,
                        order_id=f"FIRST_1_{tenant_id}",
                        payment_key=payment_key,
                        amount=amount,
                        transaction_type=TransactionType.CHARGE,
                        type=PaymentType.FIRST_PAYMENT,
                        status=PaymentStatus.DONE,
                        plan=plan,
                    )
                )
                gateway.register_payment(payment_key, amount)
            uow.append_segment(
                HistoryRecord(
                    tenant_id=tenant_id,
                    owner_id=subscription.owner_id,
                    plan=plan,
                    status=str(status),
                    amount=amount,
                    period_start=period_start,
                    change_type=ChangeType.NEW,
                    changed_at=period_start,
                )
            )
        return created

    return _seed
