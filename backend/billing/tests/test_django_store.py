from dataclasses import replace
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from billing.constants import PaymentStatus, PaymentType, TransactionType
from billing.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    DuplicateCardError,
    GatewayError,
    PartialPaymentError,
    TenantLockTimeout,
    ValidationError,
)
from billing.models import CardInstrument, Payment, Subscription, SubscriptionHistoryRecord
from billing.records import CardRecord, PaymentRecord
from billing.services.card_registry import CardRegistry
from billing.store.django_store import DjangoBillingStore

KST = ZoneInfo("Asia/Seoul")


@pytest.fixture
def store():
    return DjangoBillingStore()


@pytest.mark.django_db
def test_upgrade_commits_all_rows_together(store, lifecycle, seed_subscription):
    seed_subscription()

    result = lifecycle.change_plan("tenant-1", "business", idempotency_key="upgrade-1")

    assert result.charged_amount == 70258
    subscription = Subscription.objects.get(pk="tenant-1")
    assert subscription.plan == "business"
    assert subscription.version == 2
    assert Payment.objects.filter(tenant_id="tenant-1").count() == 3
    source = Payment.objects.get(order_id="FIRST_1_tenant-1")
    assert source.refunded_amount == 26419
    assert source.refunds.get().amount == -26419
    assert SubscriptionHistoryRecord.objects.filter(tenant_id="tenant-1", period_end__isnull=True).count() == 1


@pytest.mark.django_db
def test_duplicate_request_reads_stored_result(store, lifecycle, gateway, seed_subscription):
    seed_subscription(status="canceled")

    first = lifecycle.resubscribe("tenant-1", "basic", idempotency_key="resub-1")
    second = lifecycle.resubscribe("tenant-1", "basic", idempotency_key="resub-1")

    assert second.duplicate
    assert second.order_id == first.order_id
    assert len(gateway.calls_of("charge")) == 1
    assert Payment.objects.filter(idempotency_key="resub-1").count() == 1


@pytest.mark.django_db
def test_stale_version_is_rejected(store, seed_subscription):
    subscription = seed_subscription()
    with store.atomic() as uow:
        uow.save_subscription(replace(subscription, brand_name="First"), subscription.version)

    with pytest.raises(ConcurrentModificationError) as exc:
        with store.atomic() as uow:
            uow.save_subscription(replace(subscription, brand_name="Second"), subscription.version)

    assert exc.value.retryable is True
    assert Subscription.objects.get(pk="tenant-1").brand_name == "First"


@pytest.mark.django_db
def test_failed_unit_of_work_rolls_back_every_write(store, seed_subscription):
    subscription = seed_subscription()

    with pytest.raises(ConflictError):
        with store.atomic() as uow:
            uow.save_subscription(replace(subscription, plan="business"), subscription.version)
            uow.append_segment(store.open_history_segment("tenant-1"))

    assert Subscription.objects.get(pk="tenant-1").plan == "basic"


@pytest.mark.django_db
def test_refund_cannot_exceed_charge(store, seed_subscription):
    seed_subscription()
    source = store.latest_refundable_charge("tenant-1")

    with pytest.raises(ValidationError) as exc:
        with store.atomic() as uow:
            uow.apply_refund(source.id, 39001)

    assert exc.value.code == "refund_exceeds_charge"
    assert Payment.objects.get(pk=source.id).refunded_amount == 0


@pytest.mark.django_db
def test_latest_refundable_charge_ignores_refund_types(store, seed_subscription):
    seed_subscription()
    with store.atomic() as uow:
        uow.insert_payment(
            PaymentRecord(
                tenant_id="tenant-1",
                order_id="REFUND_2_tenant-1",
                amount=-1000,
                transaction_type=TransactionType.REFUND,
                type=PaymentType.CANCEL_REFUND,
                status=PaymentStatus.DONE,
            )
        )

    assert store.latest_refundable_charge("tenant-1").order_id == "FIRST_1_tenant-1"


@pytest.mark.django_db
def test_card_constraints(store, seed_subscription):
    seed_subscription()

    with pytest.raises(DuplicateCardError):
        with store.atomic() as uow:
            uow.insert_card(CardRecord(tenant_id="tenant-1", billing_key="bk_x", card_info={"number": "4330****1234"}))

    with pytest.raises(ConflictError) as exc:
        with store.atomic() as uow:
            uow.insert_card(
                CardRecord(tenant_id="tenant-1", billing_key="bk_y", card_info={"number": "1111****2222"}, is_primary=True)
            )

    assert exc.value.code == "primary_card_exists"
    assert CardInstrument.objects.filter(tenant_id="tenant-1").count() == 1


@pytest.mark.django_db
def test_history_queries(store, lifecycle, clock, seed_subscription):
    seed_subscription("tenant-1", owner_id="owner-1")
    seed_subscription("tenant-2", owner_id="owner-1")
    lifecycle.cancel("tenant-1", "scheduled")

    rows = store.history_for_tenant("tenant-1")
    assert [row.change_type for row in rows] == ["cancel", "new"]
    assert rows[1].period_end == rows[0].period_start == clock.now
    assert {row.tenant_id for row in store.history_for_user("owner-1")} == {"tenant-1", "tenant-2"}
    assert len(store.history_for_tenants(["tenant-1", "tenant-2"], limit=2)) == 2


@pytest.mark.django_db
def test_tenant_lock_times_out_while_held(store, lifecycle, seed_subscription):
    seed_subscription()

    with store.tenant_lock("tenant-1"):
        with pytest.raises(TenantLockTimeout):
            lifecycle.cancel("tenant-1", "scheduled")

    assert lifecycle.cancel("tenant-1", "scheduled").subscription.status == "pending_cancel"


@pytest.mark.django_db
def test_admin_edit_writes_change_log(store, lifecycle, seed_subscription):
    seed_subscription()

    lifecycle.admin_edit(
        "tenant-1",
        {"next_billing_date": datetime(2025, 4, 5, 9, 0, tzinfo=KST), "email": "billing@example.com"},
        admin_id="admin-7",
    )

    log = store.change_logs("tenant-1")[0]
    assert log.new_data["email"] == "billing@example.com"
    assert log.previous_data["next_billing_date"].startswith("2025-04-01")


@pytest.mark.django_db
def test_cards_without_masked_number_can_coexist(store, seed_subscription):
    seed_subscription(with_card=False)
    registry = CardRegistry(store)

    registry.add_card("tenant-1", "bk_a", {"company": "Shinhan"})
    registry.add_card("tenant-1", "bk_b", {"company": "KB"})

    assert CardInstrument.objects.filter(tenant_id="tenant-1", card_number="").count() == 2
    registry.add_card("tenant-1", "bk_c", {"company": "KB", "number": "4330****1234"})
    with pytest.raises(DuplicateCardError):
        registry.add_card("tenant-1", "bk_d", {"company": "KB", "number": "4330****1234"})


@pytest.mark.django_db
def test_retry_after_partial_failure_reuses_recorded_refund(store, lifecycle, gateway, seed_subscription):
    seed_subscription()
    gateway.charge_error = GatewayError("card declined", status_code=400, gateway_code="REJECT_CARD_PAYMENT")

    for _ in range(2):
        with pytest.raises(PartialPaymentError) as exc:
            lifecycle.change_plan("tenant-1", "business", idempotency_key="upgrade-1")

    assert exc.value.refunded_amount == 26419
    assert len(gateway.calls_of("refund")) == 1
    assert Payment.objects.filter(tenant_id="tenant-1", transaction_type="refund").count() == 1
    assert Payment.objects.get(order_id="FIRST_1_tenant-1").refunded_amount == 26419
