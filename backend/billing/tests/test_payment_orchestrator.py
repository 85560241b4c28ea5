import pytest

from billing.constants import PaymentStatus, PaymentType, TransactionType
from billing.exceptions import BillingKeyMissing, GatewayError, PartialPaymentError, ValidationError
from billing.services.proration import ProrationQuote


def _quote(credit, new_amount):
    return ProrationQuote(
        total_days_in_period=31,
        used_days=10,
        days_left=21,
        credit_amount=credit,
        new_plan_days=22,
        prorated_new_amount=new_amount,
        net=new_amount - credit,
    )


def test_refund_is_capped_by_remaining_and_gateway_amount(orchestrator, gateway, seed_subscription):
    seed_subscription()
    gateway.register_payment("pk_seed_tenant-1", 39000, canceled=30000)

    outcome = orchestrator.refund_latest_charge("tenant-1", 26419, "plan change")

    assert outcome.refunded_amount == 9000
    assert outcome.processed
    assert gateway.calls_of("refund")[0][2] == 9000


def test_refund_skips_without_eligible_charge(orchestrator, gateway, seed_subscription):
    seed_subscription(with_charge=False)

    outcome = orchestrator.refund_latest_charge("tenant-1", 10000, "cancel")

    assert outcome.skipped_reason == "no_eligible_charge"
    assert not outcome.processed
    assert gateway.calls == []


def test_refund_skips_when_gateway_has_nothing_cancellable(orchestrator, gateway, seed_subscription):
    seed_subscription()
    gateway.register_payment("pk_seed_tenant-1", 39000, canceled=39000)

    outcome = orchestrator.refund_latest_charge("tenant-1", 10000, "cancel")

    assert outcome.skipped_reason == "not_cancellable"
    assert gateway.calls_of("refund") == []


def test_refund_skips_zero_request(orchestrator, gateway):
    outcome = orchestrator.refund_latest_charge("tenant-1", 0, "cancel")

    assert outcome.skipped_reason == "nothing_to_refund"
    assert gateway.calls == []


def test_refund_failure_aborts_saga_before_charge(store, orchestrator, gateway, seed_subscription):
    subscription = seed_subscription()
    gateway.refund_error = GatewayError("declined", status_code=400, gateway_code="REJECT_CARD_PAYMENT")

    with pytest.raises(GatewayError) as exc:
        orchestrator.run_plan_change_saga(subscription, _quote(26419, 70258), "business", "key-1")

    assert exc.value.retryable is False
    assert gateway.calls_of("charge") == []
    assert len(store.list_payments("tenant-1")) == 1


def test_charge_failure_after_refund_is_partial(store, orchestrator, gateway, seed_subscription):
    subscription = seed_subscription()
    gateway.charge_error = GatewayError("limit exceeded", status_code=400, gateway_code="EXCEED_MAX_AMOUNT")

    with pytest.raises(PartialPaymentError) as exc:
        orchestrator.run_plan_change_saga(subscription, _quote(26419, 70258), "business", "key-1")

    assert exc.value.refund_processed is True
    assert exc.value.refunded_amount == 26419
    assert exc.value.retryable is False
    payments = store.list_payments("tenant-1")
    refund_rows = [row for row in payments if row.transaction_type == TransactionType.REFUND]
    failed_rows = [row for row in payments if row.status == PaymentStatus.FAILED]
    assert refund_rows[0].amount == -26419
    assert refund_rows[0].original_payment_id is not None
    assert failed_rows[0].idempotency_key == "key-1"
    source = store.get_payment(refund_rows[0].original_payment_id)
    assert source.refunded_amount == 26419
    # The key resolves to the completed refund, flagged as a partial failure.
    recorded = store.find_payment_by_idempotency_key("key-1")
    assert recorded.id == refund_rows[0].id
    assert recorded.metadata == {"partial_failure": True, "failed_order_id": failed_rows[0].order_id}


def test_saga_requires_billing_key_before_any_gateway_call(orchestrator, gateway, seed_subscription):
    subscription = seed_subscription(with_card=False)

    with pytest.raises(BillingKeyMissing):
        orchestrator.run_plan_change_saga(subscription, _quote(26419, 70258), "business")

    assert gateway.calls == []


def test_saga_skips_charge_for_zero_amount(orchestrator, gateway, seed_subscription):
    subscription = seed_subscription()

    outcome = orchestrator.run_plan_change_saga(subscription, _quote(10000, 0), "basic")

    assert outcome.charge is None
    assert outcome.refund.refunded_amount == 10000
    assert gateway.calls_of("charge") == []


def test_charge_uses_derived_gateway_idempotency_key(orchestrator, gateway, seed_subscription):
    subscription = seed_subscription()

    outcome = orchestrator.charge(subscription, 1000, "UPGRADE", "Portal Basic", "key-9")

    assert outcome.order_id.startswith("UPGRADE_")
    assert outcome.order_id.endswith("_tenant-1")
    assert gateway.calls_of("charge")[0][4] == "key-9:charge"


def test_manual_charge_is_idempotent(store, orchestrator, gateway, seed_subscription):
    seed_subscription()

    first = orchestrator.manual_charge("tenant-1", 5000, "setup fee", idempotency_key="admin-1", admin_id="ops")
    second = orchestrator.manual_charge("tenant-1", 5000, "setup fee", idempotency_key="admin-1", admin_id="ops")

    assert first.type == PaymentType.ADMIN_MANUAL
    assert second.id == first.id
    assert len(gateway.calls_of("charge")) == 1


def test_manual_charge_rejects_non_positive_amount(orchestrator, seed_subscription):
    seed_subscription()

    with pytest.raises(ValidationError) as exc:
        orchestrator.manual_charge("tenant-1", 0, "oops")

    assert exc.value.code == "invalid_amount"


def test_refund_payment_caps_at_remaining(store, orchestrator, gateway, seed_subscription):
    seed_subscription()
    source = store.list_payments("tenant-1")[0]

    first = orchestrator.refund_payment(source.id, 30000, "goodwill")
    second = orchestrator.refund_payment(source.id, 30000, "goodwill")

    assert first.amount == -30000
    assert second.amount == -9000
    assert store.get_payment(source.id).refunded_amount == 39000
    with pytest.raises(ValidationError) as exc:
        orchestrator.refund_payment(source.id, 1, "again")
    assert exc.value.code == "nothing_refundable"
