"""Refund/charge sagas against the payment gateway.

A saga makes at most two gateway calls: refund the unused part of the most
recent charge, then charge the new amount. Gateway calls never run inside a
store transaction; ordering plus idempotency-key lookups guard against
double charging.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from django.conf import settings
from django.utils import timezone

from billing.constants import ORDER_PREFIXES, PaymentStatus, PaymentType, TransactionType, plan_name
from billing.exceptions import (
    BillingKeyMissing,
    CardNotFound,
    GatewayError,
    PartialPaymentError,
    SubscriptionNotFound,
    ValidationError,
)
from billing.observability.logging import log_billing_event
from billing.observability.metrics import PARTIAL_FAILURE_COUNT
from billing.records import PaymentRecord, SubscriptionRecord
from billing.services.gateway import ChargeResult, Payer, PaymentGateway, RefundResult, TossPaymentsGateway
from billing.services.proration import ProrationQuote
from billing.store.base import BillingStore, get_default_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundOutcome:
    refunded_amount: int = 0
    source: Optional[PaymentRecord] = None
    result: Optional[RefundResult] = None
    order_id: Optional[str] = None
    skipped_reason: Optional[str] = None

    @property
    def processed(self) -> bool:
        return self.refunded_amount > 0 and self.result is not None


@dataclass(frozen=True)
class ChargeOutcome:
    amount: int
    order_id: str
    order_name: str
    result: ChargeResult


@dataclass(frozen=True)
class SagaOutcome:
    refund: RefundOutcome
    charge: Optional[ChargeOutcome] = None

    @property
    def charged_amount(self) -> int:
        return self.charge.amount if self.charge else 0


def build_order_id(prefix: str, tenant_id: str, at: datetime) -> str:
    return f"{prefix}_{int(at.timestamp() * 1000)}_{tenant_id}"


def order_name(*parts: str) -> str:
    prefix = getattr(settings, "BILLING_ORDER_NAME_PREFIX", "Portal")
    return " ".join([prefix, *[part for part in parts if part]])


class PaymentOrchestrator:
    def __init__(self, store: Optional[BillingStore] = None, gateway: Optional[PaymentGateway] = None,
                 clock: Callable[[], datetime] = timezone.now) -> None:
        self.store = store or get_default_store()
        self.gateway = gateway or TossPaymentsGateway()
        self.clock = clock

    def find_duplicate(self, idempotency_key: Optional[str]) -> Optional[PaymentRecord]:
        if not idempotency_key:
            return None
        return self.store.find_payment_by_idempotency_key(idempotency_key)

    def refund_latest_charge(self, tenant_id: str, requested_amount: int, reason: str,
                             idempotency_key: Optional[str] = None) -> RefundOutcome:
        """Refund up to ``requested_amount`` of the tenant's most recent charge.

        The amount is capped by what the store says is left on that charge and
        by what the gateway reports as still cancellable. Gateway failures
        propagate so the caller aborts before charging.
        """

        if requested_amount <= 0:
            return RefundOutcome(skipped_reason="nothing_to_refund")

        source = self.store.latest_refundable_charge(tenant_id)
        if source is None:
            logger.info("No refundable charge for tenant %s, skipping refund", tenant_id)
            return RefundOutcome(skipped_reason="no_eligible_charge")
        if not source.payment_key:
            logger.info("Charge %s has no payment key, skipping refund", source.id)
            return RefundOutcome(source=source, skipped_reason="no_payment_key")
        if source.refundable_amount <= 0:
            return RefundOutcome(source=source, skipped_reason="already_refunded")

        snapshot = self.gateway.get_payment(source.payment_key)
        cancellable = snapshot.cancelable_amount
        if cancellable <= 0:
            logger.info("Gateway reports nothing cancellable on %s, skipping refund", source.payment_key)
            return RefundOutcome(source=source, skipped_reason="not_cancellable")

        amount = min(requested_amount, source.refundable_amount, cancellable)
        if amount != requested_amount:
            logger.warning(
                "Refund for tenant %s capped from %s to %s (store remaining=%s, gateway cancellable=%s)",
                tenant_id,
                requested_amount,
                amount,
                source.refundable_amount,
                cancellable,
            )
        order_id = build_order_id(ORDER_PREFIXES["refund"], tenant_id, self.clock())
        result = self.gateway.refund(
            payment_key=source.payment_key,
            reason=reason,
            amount=amount,
            idempotency_key=f"{idempotency_key}:refund" if idempotency_key else None,
        )
        log_billing_event(
            message="billing.gateway.refunded",
            tenant_id=tenant_id,
            extra={"order_id": order_id, "amount": amount, "source_payment_id": source.id},
        )
        return RefundOutcome(refunded_amount=amount, source=source, result=result, order_id=order_id)

    def charge(self, subscription: SubscriptionRecord, amount: int, order_prefix: str, order_name: str,
               idempotency_key: Optional[str] = None, billing_key: Optional[str] = None) -> ChargeOutcome:
        billing_key = billing_key or subscription.billing_key
        if not billing_key:
            raise BillingKeyMissing(
                "No billing key on file for this tenant.",
                context={"tenant_id": subscription.tenant_id},
            )
        order_id = build_order_id(order_prefix, subscription.tenant_id, self.clock())
        result = self.gateway.charge(
            billing_key=billing_key,
            amount=amount,
            order_id=order_id,
            order_name=order_name,
            payer=Payer(
                customer_key=subscription.tenant_id,
                email=subscription.email,
                name=subscription.brand_name,
            ),
            idempotency_key=f"{idempotency_key}:charge" if idempotency_key else None,
        )
        log_billing_event(
            message="billing.gateway.charged",
            tenant_id=subscription.tenant_id,
            extra={"order_id": order_id, "amount": amount, "payment_key": result.payment_key},
        )
        return ChargeOutcome(amount=amount, order_id=order_id, order_name=order_name, result=result)

    def build_refund_rows(self, refund: RefundOutcome, *, tenant_id: str, payment_type: str, plan: Optional[str],
                          reason: str, idempotency_key: Optional[str] = None,
                          metadata: Optional[dict] = None) -> List[PaymentRecord]:
        if not refund.processed:
            return []
        return [
            PaymentRecord(
                tenant_id=tenant_id,
                order_id=refund.order_id,
                payment_key=refund.result.payment_key,
                amount=-refund.refunded_amount,
                transaction_type=TransactionType.REFUND,
                type=payment_type,
                status=PaymentStatus.DONE,
                plan=plan,
                order_name=reason,
                receipt_url=refund.result.receipt_url or "",
                reason=reason,
                original_payment_id=refund.source.id,
                idempotency_key=idempotency_key,
                metadata=dict(metadata or {}),
                paid_at=self.clock(),
            )
        ]

    def build_charge_row(self, charge: ChargeOutcome, *, tenant_id: str, payment_type: str, plan: Optional[str],
                         idempotency_key: Optional[str] = None, status: str = PaymentStatus.DONE,
                         reason: str = "", metadata: Optional[dict] = None) -> PaymentRecord:
        return PaymentRecord(
            tenant_id=tenant_id,
            order_id=charge.order_id,
            payment_key=charge.result.payment_key,
            amount=charge.amount,
            transaction_type=TransactionType.CHARGE,
            type=payment_type,
            status=status,
            plan=plan,
            order_name=charge.order_name,
            method=charge.result.method or "",
            card_info=charge.result.card_info,
            receipt_url=charge.result.receipt_url or "",
            reason=reason,
            idempotency_key=idempotency_key,
            metadata=dict(metadata or {}),
            paid_at=self.clock(),
        )

    def _persist_partial_failure(self, subscription: SubscriptionRecord, refund: RefundOutcome, *,
                                 payment_type: str, plan: str, amount: int, order_prefix: str,
                                 reason: str, idempotency_key: Optional[str], error: GatewayError) -> None:
        failed_charge = PaymentRecord(
            tenant_id=subscription.tenant_id,
            order_id=build_order_id(order_prefix, subscription.tenant_id, self.clock()),
            amount=amount,
            transaction_type=TransactionType.CHARGE,
            type=payment_type,
            status=PaymentStatus.FAILED,
            plan=plan,
            reason=error.message,
            idempotency_key=idempotency_key,
            metadata={"error": error.to_dict(), "refund_order_id": refund.order_id},
        )
        with self.store.atomic() as uow:
            uow.apply_refund(refund.source.id, refund.refunded_amount)
            for row in self.build_refund_rows(
                refund,
                tenant_id=subscription.tenant_id,
                payment_type=PaymentType.PLAN_CHANGE_REFUND,
                plan=subscription.plan,
                reason=reason,
                idempotency_key=idempotency_key,
                metadata={"partial_failure": True, "failed_order_id": failed_charge.order_id},
            ):
                uow.insert_payment(row)
            uow.insert_payment(failed_charge)

    def run_plan_change_saga(self, subscription: SubscriptionRecord, quote: ProrationQuote, new_plan: str,
                             idempotency_key: Optional[str] = None,
                             payment_type: str = PaymentType.UPGRADE) -> SagaOutcome:
        if quote.prorated_new_amount > 0 and not subscription.billing_key:
            raise BillingKeyMissing(
                "No billing key on file for this tenant.",
                context={"tenant_id": subscription.tenant_id},
            )

        reason = f"{plan_name(subscription.plan)} -> {plan_name(new_plan)} plan change (unused days)"
        refund = self.refund_latest_charge(subscription.tenant_id, quote.credit_amount, reason, idempotency_key)

        if quote.prorated_new_amount <= 0:
            return SagaOutcome(refund=refund)

        name = order_name(plan_name(subscription.plan), "->", plan_name(new_plan))
        prefix = ORDER_PREFIXES.get(str(payment_type), ORDER_PREFIXES["upgrade"])
        try:
            charge = self.charge(subscription, quote.prorated_new_amount, prefix, name, idempotency_key)
        except GatewayError as exc:
            if not refund.processed:
                raise
            PARTIAL_FAILURE_COUNT.labels(operation="change_plan").inc()
            logger.error(
                "Charge failed after refund for tenant %s (refunded=%s): %s",
                subscription.tenant_id,
                refund.refunded_amount,
                exc,
            )
            self._persist_partial_failure(
                subscription,
                refund,
                payment_type=payment_type,
                plan=new_plan,
                amount=quote.prorated_new_amount,
                order_prefix=prefix,
                reason=reason,
                idempotency_key=idempotency_key,
                error=exc,
            )
            log_billing_event(
                message="billing.saga.partial_failure",
                tenant_id=subscription.tenant_id,
                extra={"refunded_amount": refund.refunded_amount, "refund_order_id": refund.order_id},
                level=logging.ERROR,
            )
            raise PartialPaymentError(
                "Refund succeeded but the new charge failed; manual reconciliation required.",
                refunded_amount=refund.refunded_amount,
                refund_order_id=refund.order_id,
                cause=exc,
                context={"tenant_id": subscription.tenant_id},
            ) from exc
        return SagaOutcome(refund=refund, charge=charge)

    def manual_charge(self, tenant_id: str, amount: int, reason: str, card_id: Optional[str] = None,
                      idempotency_key: Optional[str] = None, admin_id: Optional[str] = None) -> PaymentRecord:
        """Admin-initiated one-off charge against a stored card."""

        duplicate = self.find_duplicate(idempotency_key)
        if duplicate is not None:
            return duplicate
        if amount <= 0:
            raise ValidationError("Charge amount must be positive.", code="invalid_amount")

        with self.store.tenant_lock(tenant_id):
            duplicate = self.find_duplicate(idempotency_key)
            if duplicate is not None:
                return duplicate
            subscription = self.store.get_subscription(tenant_id)
            if subscription is None:
                raise SubscriptionNotFound(f"No subscription for tenant {tenant_id}.")
            billing_key = subscription.billing_key
            if card_id:
                card = self.store.get_card(card_id)
                if card is None or card.tenant_id != tenant_id:
                    raise CardNotFound("Card not found.", context={"card_id": card_id})
                billing_key = card.billing_key

            charge = self.charge(
                subscription,
                amount,
                ORDER_PREFIXES["admin_manual"],
                order_name(plan_name(subscription.plan), reason),
                idempotency_key,
                billing_key=billing_key,
            )
            row = self.build_charge_row(
                charge,
                tenant_id=tenant_id,
                payment_type=PaymentType.ADMIN_MANUAL,
                plan=subscription.plan,
                idempotency_key=idempotency_key,
                reason=reason,
                metadata={"admin_id": admin_id} if admin_id else None,
            )
            with self.store.atomic() as uow:
                row = uow.insert_payment(row)

        log_billing_event(
            message="billing.payment.manual_charge",
            tenant_id=tenant_id,
            actor=admin_id,
            extra={"order_id": row.order_id, "amount": amount},
        )
        return row

    def refund_payment(self, payment_id: str, amount: Optional[int], reason: str,
                       idempotency_key: Optional[str] = None, admin_id: Optional[str] = None) -> PaymentRecord:
        """Refund a specific charge, capped by what remains on it."""

        duplicate = self.find_duplicate(idempotency_key)
        if duplicate is not None:
            return duplicate

        payment = self.store.get_payment(payment_id)
        if payment is None or payment.transaction_type != TransactionType.CHARGE:
            raise ValidationError("Payment is not a refundable charge.", code="payment_not_refundable")

        with self.store.tenant_lock(payment.tenant_id):
            duplicate = self.find_duplicate(idempotency_key)
            if duplicate is not None:
                return duplicate
            payment = self.store.get_payment(payment_id)
            if payment.status != PaymentStatus.DONE or not payment.payment_key:
                raise ValidationError("Payment is not a refundable charge.", code="payment_not_refundable")

            requested = payment.refundable_amount if amount is None else amount
            if requested <= 0:
                raise ValidationError("Refund amount must be positive.", code="invalid_amount")
            cancellable = self.gateway.get_payment(payment.payment_key).cancelable_amount
            capped = min(requested, payment.refundable_amount, cancellable)
            if capped <= 0:
                raise ValidationError(
                    "Nothing left to refund on this payment.",
                    code="nothing_refundable",
                    context={"payment_id": payment_id},
                )

            result = self.gateway.refund(
                payment_key=payment.payment_key,
                reason=reason,
                amount=capped,
                idempotency_key=f"{idempotency_key}:refund" if idempotency_key else None,
            )
            refund = RefundOutcome(
                refunded_amount=capped,
                source=payment,
                result=result,
                order_id=build_order_id(ORDER_PREFIXES["refund"], payment.tenant_id, self.clock()),
            )
            with self.store.atomic() as uow:
                uow.apply_refund(payment.id, capped)
                rows = self.build_refund_rows(
                    refund,
                    tenant_id=payment.tenant_id,
                    payment_type=PaymentType.REFUND,
                    plan=payment.plan,
                    reason=reason,
                    idempotency_key=idempotency_key,
                )
                row = uow.insert_payment(rows[0])

        log_billing_event(
            message="billing.payment.refunded",
            tenant_id=payment.tenant_id,
            actor=admin_id,
            extra={"payment_id": payment_id, "amount": capped},
        )
        return row
