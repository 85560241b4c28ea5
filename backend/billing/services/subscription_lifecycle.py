"""Subscription lifecycle orchestration: trials, plan changes, cancellation and resubscription.

Every entry point runs under the tenant lock, performs its gateway calls
first and then commits all resulting writes (subscription, payments,
history, cards) in one unit of work.
"""
from __future__ import annotations

import copy
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from billing.constants import (
    ORDER_PREFIXES,
    PLAN_ORDER,
    RESERVED_STATUSES,
    CancelMode,
    ChangeType,
    PaymentStatus,
    PaymentType,
    Plan,
    SubscriptionStatus,
    TransactionType,
    plan_name,
    plan_price,
    trial_days,
)
from billing.exceptions import (
    BillingError,
    BillingKeyMissing,
    ConflictError,
    InvalidProrationBasis,
    PartialPaymentError,
    SubscriptionNotFound,
    ValidationError,
)
from billing.observability.logging import log_billing_event
from billing.observability.metrics import TRANSITION_COUNT
from billing.records import ChangeLogRecord, PaymentRecord, SubscriptionRecord, to_jsonable
from billing.services import history
from billing.services.card_registry import register_primary_card
from billing.services.gateway import PaymentGateway
from billing.services.notifications import notify_transition
from billing.services.payment_orchestrator import PaymentOrchestrator, order_name
from billing.services.proration import (
    add_months,
    billing_zone,
    calculate_proration,
    calculate_refund,
    calendar_days_between,
    estimate_cycle_days,
)
from billing.services.state_machine import (
    CANCEL_NOOP_STATUSES,
    Transition,
    cancel_target_status,
    ensure_owner,
    ensure_transition,
    parse_plan,
    target_status,
)
from billing.store.base import BillingStore, UnitOfWork, get_default_store

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ADMIN_EDITABLE_FIELDS = frozenset(
    {
        "plan",
        "status",
        "amount",
        "base_amount",
        "amount_period_days",
        "current_period_start",
        "current_period_end",
        "next_billing_date",
        "pending_plan",
        "pending_amount",
        "brand_name",
        "email",
        "owner_id",
    }
)
# Edits of these fields change what is billed and therefore open a history segment.
BILLING_FIELDS = frozenset({"plan", "status", "amount"})
DATETIME_FIELDS = frozenset({"current_period_start", "current_period_end", "next_billing_date"})


@dataclass(frozen=True)
class TransitionResult:
    transition: str
    tenant_id: str
    success: bool = True
    refunded_amount: int = 0
    charged_amount: int = 0
    order_id: Optional[str] = None
    payment_key: Optional[str] = None
    duplicate: bool = False
    noop: bool = False
    refund_processed: bool = False
    subscription: Optional[SubscriptionRecord] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        if self.duplicate:
            return "duplicate"
        if self.noop:
            return "noop"
        return "success"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transition": self.transition,
            "tenant_id": self.tenant_id,
            "refunded_amount": self.refunded_amount,
            "charged_amount": self.charged_amount,
            "order_id": self.order_id,
            "payment_key": self.payment_key,
            "duplicate": self.duplicate,
            "noop": self.noop,
            "refund_processed": self.refund_processed,
            "subscription": self.subscription.as_dict() if self.subscription else None,
            "detail": to_jsonable(self.detail),
        }


def _instrumented(name: str):
    """Count, log and notify every entry-point call under ``name``."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, tenant_id, *args, **kwargs):
            try:
                result = func(self, tenant_id, *args, **kwargs)
            except BillingError as exc:
                TRANSITION_COUNT.labels(transition=name, outcome="error").inc()
                log_billing_event(
                    message=f"billing.transition.{name}.failed",
                    tenant_id=tenant_id,
                    extra={"error": exc.to_dict()},
                    level=logging.WARNING,
                )
                raise
            TRANSITION_COUNT.labels(transition=name, outcome=result.outcome).inc()
            log_billing_event(
                message=f"billing.transition.{name}",
                tenant_id=tenant_id,
                extra={
                    "outcome": result.outcome,
                    "charged_amount": result.charged_amount,
                    "refunded_amount": result.refunded_amount,
                    "order_id": result.order_id,
                },
            )
            if result.outcome == "success":
                notify_transition(name, result.as_dict())
            return result

        return wrapper

    return decorator


class SubscriptionLifecycle:
    def __init__(self, store: Optional[BillingStore] = None, gateway: Optional[PaymentGateway] = None,
                 clock: Callable[[], datetime] = timezone.now,
                 orchestrator: Optional[PaymentOrchestrator] = None) -> None:
        self.store = store or get_default_store()
        self.clock = clock
        self.orchestrator = orchestrator or PaymentOrchestrator(self.store, gateway, clock=clock)

    # -- helpers -----------------------------------------------------------

    def _load(self, tenant_id: str, owner_id: Optional[str] = None) -> SubscriptionRecord:
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription for tenant {tenant_id}.", context={"tenant_id": tenant_id})
        ensure_owner(subscription, owner_id)
        return subscription

    def _purchasable_price(self, plan: str) -> int:
        price = plan_price(plan)
        if price <= 0:
            raise ValidationError(
                f"Plan '{plan}' has no list price and cannot be purchased directly.",
                code="plan_requires_quote",
                context={"plan": str(plan)},
            )
        return price

    def _duplicate(self, transition: str, tenant_id: str, idempotency_key: Optional[str]) -> Optional[TransitionResult]:
        payment = self.orchestrator.find_duplicate(idempotency_key)
        if payment is None:
            return None
        if payment.tenant_id != tenant_id:
            raise ConflictError(
                "Idempotency key was already used for another tenant.",
                code="idempotency_key_reused",
                context={"idempotency_key": idempotency_key},
            )
        if payment.metadata.get("partial_failure"):
            # refund went through, charge did not: surface it again without new gateway calls
            raise PartialPaymentError(
                "Refund succeeded but the new charge failed; manual reconciliation required.",
                refunded_amount=-payment.amount,
                refund_order_id=payment.order_id,
                context={
                    "tenant_id": tenant_id,
                    "failed_order_id": payment.metadata.get("failed_order_id"),
                    "duplicate": True,
                },
            )
        charged = payment.amount if payment.transaction_type == TransactionType.CHARGE else 0
        refunded = -payment.amount if payment.transaction_type == TransactionType.REFUND else 0
        refunded = refunded or int(payment.metadata.get("refunded_amount") or 0)
        return TransitionResult(
            transition=transition,
            tenant_id=tenant_id,
            refunded_amount=refunded,
            charged_amount=charged,
            order_id=payment.order_id,
            payment_key=payment.payment_key,
            duplicate=True,
            refund_processed=refunded > 0,
            subscription=self.store.get_subscription(tenant_id),
        )

    def _noop(self, transition: str, subscription: SubscriptionRecord, reason: str) -> TransitionResult:
        return TransitionResult(
            transition=transition,
            tenant_id=subscription.tenant_id,
            noop=True,
            subscription=subscription,
            detail={"reason": reason},
        )

    def _next_cycle(self, start: datetime) -> datetime:
        return add_months(start.astimezone(billing_zone()), 1)

    def _start_fresh_cycle(self, subscription: SubscriptionRecord, plan: str, price: int, now: datetime) -> None:
        next_billing = self._next_cycle(now)
        subscription.previous_plan = subscription.plan
        subscription.previous_amount = subscription.amount
        subscription.plan = str(plan)
        subscription.amount = price
        subscription.base_amount = price
        subscription.amount_period_days = calendar_days_between(now, next_billing)
        subscription.current_period_start = now
        subscription.current_period_end = next_billing
        subscription.next_billing_date = next_billing
        subscription.clear_pending()

    @staticmethod
    def _clear_cancellation(subscription: SubscriptionRecord) -> None:
        subscription.cancel_mode = None
        subscription.cancel_reason = ""
        subscription.canceled_at = None
        subscription.cancel_restore_billing_date = None

    def _commit(self, tenant_id: str, write: Callable[[UnitOfWork], Any], order_ids: List[str]) -> Any:
        try:
            with self.store.atomic() as uow:
                return write(uow)
        except BillingError as exc:
            if order_ids:
                # Gateway effects already happened; a reconciliation job has to pick these up.
                logger.error(
                    "Commit failed after gateway calls for tenant %s (orders=%s): %s",
                    tenant_id,
                    order_ids,
                    exc,
                )
            raise

    def _paid_activation(self, transition: Transition, subscription: SubscriptionRecord, plan: str, price: int,
                         *, payment_type: str, change_type: str, changed_by: str, idempotency_key: Optional[str],
                         now: datetime) -> TransitionResult:
        """Charge a full fresh cycle and activate; shared by conversion and resubscription."""

        if not subscription.billing_key:
            raise BillingKeyMissing(
                "No billing key on file; register a card first.",
                context={"tenant_id": subscription.tenant_id},
            )
        new_status = target_status(subscription.status, transition)
        previous = copy.deepcopy(subscription)
        charge = self.orchestrator.charge(
            subscription,
            price,
            ORDER_PREFIXES[str(payment_type)],
            order_name(plan_name(plan), "plan"),
            idempotency_key,
        )

        self._start_fresh_cycle(subscription, plan, price, now)
        subscription.status = new_status
        self._clear_cancellation(subscription)
        row = self.orchestrator.build_charge_row(
            charge,
            tenant_id=subscription.tenant_id,
            payment_type=payment_type,
            plan=str(plan),
            idempotency_key=idempotency_key,
        )

        def write(uow: UnitOfWork) -> SubscriptionRecord:
            payment = uow.insert_payment(row)
            saved = uow.save_subscription(subscription, previous.version)
            history.record_transition(
                uow, saved, change_type, changed_by, now,
                previous=previous, payment_id=payment.id, order_id=payment.order_id,
            )
            return saved

        saved = self._commit(subscription.tenant_id, write, [charge.order_id])
        return TransitionResult(
            transition=transition.value,
            tenant_id=subscription.tenant_id,
            charged_amount=price,
            order_id=charge.order_id,
            payment_key=charge.result.payment_key,
            subscription=saved,
        )

    # -- entry points ------------------------------------------------------

    @_instrumented(Transition.START_TRIAL.value)
    def start_trial(self, tenant_id: str, owner_id: str, email: str, brand_name: Optional[str] = None) -> TransitionResult:
        now = self.clock()
        with self.store.tenant_lock(tenant_id):
            existing = self.store.get_subscription(tenant_id)
            new_status = target_status(existing.status if existing else None, Transition.START_TRIAL)
            trial_end = now + timedelta(days=trial_days())
            subscription = SubscriptionRecord(
                tenant_id=tenant_id,
                owner_id=owner_id,
                email=email,
                brand_name=brand_name or "",
                plan=Plan.TRIAL.value,
                status=new_status,
                amount=0,
                base_amount=0,
                amount_period_days=trial_days(),
                current_period_start=now,
                current_period_end=trial_end,
                next_billing_date=trial_end,
                trial_end=trial_end,
            )

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                created = uow.create_subscription(subscription)
                history.record_transition(uow, created, ChangeType.NEW, "user", now)
                return created

            saved = self._commit(tenant_id, write, [])
        return TransitionResult(transition=Transition.START_TRIAL.value, tenant_id=tenant_id, subscription=saved)

    @_instrumented(Transition.START_SUBSCRIPTION.value)
    def start_subscription(self, tenant_id: str, owner_id: str, email: str, plan: str, billing_key: str,
                           card_info: Dict[str, Any], idempotency_key: Optional[str] = None,
                           brand_name: Optional[str] = None) -> TransitionResult:
        plan = parse_plan(plan)
        price = self._purchasable_price(plan)
        if not billing_key:
            raise BillingKeyMissing("A billing key is required for the first payment.")
        duplicate = self._duplicate(Transition.START_SUBSCRIPTION.value, tenant_id, idempotency_key)
        if duplicate:
            return duplicate

        now = self.clock()
        with self.store.tenant_lock(tenant_id):
            duplicate = self._duplicate(Transition.START_SUBSCRIPTION.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            existing = self.store.get_subscription(tenant_id)
            new_status = target_status(existing.status if existing else None, Transition.START_SUBSCRIPTION)

            subscription = SubscriptionRecord(
                tenant_id=tenant_id,
                owner_id=owner_id,
                email=email,
                brand_name=brand_name or "",
                plan=plan.value,
                status=new_status,
                amount=price,
                base_amount=price,
                amount_period_days=1,
                billing_key=billing_key,
            )
            charge = self.orchestrator.charge(
                subscription,
                price,
                ORDER_PREFIXES["first_payment"],
                order_name(plan_name(plan), "plan"),
                idempotency_key,
            )
            self._start_fresh_cycle(subscription, plan, price, now)
            subscription.previous_plan = None
            subscription.previous_amount = None
            row = self.orchestrator.build_charge_row(
                charge,
                tenant_id=tenant_id,
                payment_type=PaymentType.FIRST_PAYMENT,
                plan=plan.value,
                idempotency_key=idempotency_key,
            )
            cards = self.store.list_cards(tenant_id)

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                register_primary_card(uow, subscription, cards, billing_key, card_info or {})
                created = uow.create_subscription(subscription)
                payment = uow.insert_payment(row)
                history.record_transition(
                    uow, created, ChangeType.NEW, "user", now,
                    payment_id=payment.id, order_id=payment.order_id,
                )
                return created

            saved = self._commit(tenant_id, write, [charge.order_id])
        return TransitionResult(
            transition=Transition.START_SUBSCRIPTION.value,
            tenant_id=tenant_id,
            charged_amount=price,
            order_id=charge.order_id,
            payment_key=charge.result.payment_key,
            subscription=saved,
        )

    @_instrumented(Transition.CONVERT_TRIAL.value)
    def convert_trial(self, tenant_id: str, plan: str, idempotency_key: Optional[str] = None,
                      owner_id: Optional[str] = None) -> TransitionResult:
        plan = parse_plan(plan)
        price = self._purchasable_price(plan)
        duplicate = self._duplicate(Transition.CONVERT_TRIAL.value, tenant_id, idempotency_key)
        if duplicate:
            return duplicate

        with self.store.tenant_lock(tenant_id):
            duplicate = self._duplicate(Transition.CONVERT_TRIAL.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            subscription = self._load(tenant_id, owner_id)
            ensure_transition(subscription.status, Transition.CONVERT_TRIAL)
            return self._paid_activation(
                Transition.CONVERT_TRIAL,
                subscription,
                plan.value,
                price,
                payment_type=PaymentType.TRIAL_CONVERSION,
                change_type=ChangeType.UPGRADE,
                changed_by="user",
                idempotency_key=idempotency_key,
                now=self.clock(),
            )

    @_instrumented(Transition.RESERVE_TRIAL_CONVERSION.value)
    def reserve_trial_conversion(self, tenant_id: str, plan: str, owner_id: Optional[str] = None) -> TransitionResult:
        plan = parse_plan(plan)
        price = self._purchasable_price(plan)
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id, owner_id)
            ensure_transition(subscription.status, Transition.RESERVE_TRIAL_CONVERSION)
            if not subscription.billing_key:
                raise BillingKeyMissing("No billing key on file; register a card first.")
            version = subscription.version
            subscription.pending_plan = plan.value
            subscription.pending_amount = price
            subscription.pending_change_at = subscription.trial_end or subscription.current_period_end

            saved = self._commit(tenant_id, lambda uow: uow.save_subscription(subscription, version), [])
        return TransitionResult(
            transition=Transition.RESERVE_TRIAL_CONVERSION.value,
            tenant_id=tenant_id,
            subscription=saved,
            detail={"pending_plan": plan.value, "pending_change_at": saved.pending_change_at},
        )

    @_instrumented(Transition.ACTIVATE_RESERVED_PLAN.value)
    def activate_reserved_plan(self, tenant_id: str, at: Optional[datetime] = None,
                               idempotency_key: Optional[str] = None) -> TransitionResult:
        """Charge the reserved plan at trial end and activate it."""

        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id)
            if subscription.status == S.ACTIVE and not subscription.pending_plan:
                return self._noop(Transition.ACTIVATE_RESERVED_PLAN.value, subscription, "already_active")
            ensure_transition(subscription.status, Transition.ACTIVATE_RESERVED_PLAN)
            if not subscription.pending_plan:
                raise ValidationError("No reserved plan to activate.", code="no_pending_plan")
            due = subscription.pending_change_at or subscription.trial_end
            # Repeated runs for the same reservation must not charge twice.
            idempotency_key = idempotency_key or f"activate:{tenant_id}:{due.isoformat() if due else 'now'}"
            duplicate = self._duplicate(Transition.ACTIVATE_RESERVED_PLAN.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            price = subscription.pending_amount or plan_price(subscription.pending_plan)
            return self._paid_activation(
                Transition.ACTIVATE_RESERVED_PLAN,
                subscription,
                subscription.pending_plan,
                price,
                payment_type=PaymentType.TRIAL_CONVERSION,
                change_type=ChangeType.UPGRADE,
                changed_by="system",
                idempotency_key=idempotency_key,
                now=at or self.clock(),
            )

    @_instrumented(Transition.CHANGE_PLAN.value)
    def change_plan(self, tenant_id: str, new_plan: str, idempotency_key: Optional[str] = None,
                    owner_id: Optional[str] = None, today: Optional[datetime] = None) -> TransitionResult:
        new_plan = parse_plan(new_plan)
        new_price = self._purchasable_price(new_plan)
        duplicate = self._duplicate(Transition.CHANGE_PLAN.value, tenant_id, idempotency_key)
        if duplicate:
            return duplicate

        with self.store.tenant_lock(tenant_id):
            duplicate = self._duplicate(Transition.CHANGE_PLAN.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            subscription = self._load(tenant_id, owner_id)
            ensure_transition(subscription.status, Transition.CHANGE_PLAN)
            if subscription.plan == new_plan:
                return self._noop(Transition.CHANGE_PLAN.value, subscription, "already_on_plan")
            if not subscription.amount_period_days or subscription.amount_period_days <= 0:
                raise InvalidProrationBasis(
                    "Subscription has no positive amount period days.",
                    context={"tenant_id": tenant_id, "amount_period_days": subscription.amount_period_days},
                )
            if not subscription.current_period_start or not subscription.next_billing_date:
                raise ValidationError(
                    "Subscription has no current billing period.",
                    code="missing_billing_period",
                    context={"tenant_id": tenant_id},
                )

            now = self.clock()
            new_basis = None
            if subscription.amount != subscription.base_amount:
                new_basis = estimate_cycle_days(subscription.next_billing_date)
            quote = calculate_proration(
                subscription.amount,
                subscription.amount_period_days,
                new_price,
                subscription.current_period_start,
                subscription.next_billing_date,
                today or now,
                new_plan_period_days=new_basis,
            )
            upgrade = PLAN_ORDER[new_plan] > PLAN_ORDER[Plan(subscription.plan)]
            payment_type = PaymentType.UPGRADE if upgrade else PaymentType.DOWNGRADE
            saga = self.orchestrator.run_plan_change_saga(
                subscription, quote, new_plan.value, idempotency_key, payment_type
            )

            previous = copy.deepcopy(subscription)
            refund_key = None if saga.charge else idempotency_key
            refund_rows = self.orchestrator.build_refund_rows(
                saga.refund,
                tenant_id=tenant_id,
                payment_type=PaymentType.PLAN_CHANGE_REFUND,
                plan=previous.plan,
                reason=f"{plan_name(previous.plan)} -> {plan_name(new_plan)} plan change (unused days)",
                idempotency_key=refund_key,
            )
            charge_row = None
            if saga.charge:
                charge_row = self.orchestrator.build_charge_row(
                    saga.charge,
                    tenant_id=tenant_id,
                    payment_type=payment_type,
                    plan=new_plan.value,
                    idempotency_key=idempotency_key,
                    metadata={
                        "refunded_amount": saga.refund.refunded_amount,
                        "refund_order_id": saga.refund.order_id,
                        "credit_amount": quote.credit_amount,
                        "net": quote.net,
                    },
                )

            subscription.previous_plan = previous.plan
            subscription.previous_amount = previous.amount
            subscription.plan = new_plan.value
            subscription.base_amount = new_price
            if quote.total_days_in_period > 0:
                subscription.amount = quote.prorated_new_amount
                subscription.amount_period_days = quote.new_plan_days
            else:
                subscription.amount = new_price
            subscription.current_period_start = now
            subscription.clear_pending()
            change_type = ChangeType.UPGRADE if upgrade else ChangeType.DOWNGRADE
            order_ids = [row.order_id for row in refund_rows] + ([charge_row.order_id] if charge_row else [])

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                payment_id = None
                if saga.refund.processed:
                    uow.apply_refund(saga.refund.source.id, saga.refund.refunded_amount)
                for row in refund_rows:
                    payment_id = uow.insert_payment(row).id
                if charge_row is not None:
                    payment_id = uow.insert_payment(charge_row).id
                saved = uow.save_subscription(subscription, previous.version)
                history.record_transition(
                    uow, saved, change_type, "user", now,
                    previous=previous, payment_id=payment_id,
                    order_id=order_ids[-1] if order_ids else None,
                )
                return saved

            saved = self._commit(tenant_id, write, order_ids)

        charge_result = saga.charge.result if saga.charge else None
        refund_result = saga.refund.result
        return TransitionResult(
            transition=Transition.CHANGE_PLAN.value,
            tenant_id=tenant_id,
            refunded_amount=saga.refund.refunded_amount,
            charged_amount=saga.charged_amount,
            order_id=order_ids[-1] if order_ids else None,
            payment_key=charge_result.payment_key if charge_result else (
                refund_result.payment_key if refund_result else None
            ),
            refund_processed=saga.refund.processed,
            subscription=saved,
            detail={
                "credit_amount": quote.credit_amount,
                "prorated_new_amount": quote.prorated_new_amount,
                "net": quote.net,
                "days_left": quote.days_left,
                "refund_skipped_reason": saga.refund.skipped_reason,
            },
        )

    @_instrumented(Transition.SCHEDULE_PLAN_CHANGE.value)
    def schedule_plan_change(self, tenant_id: str, new_plan: str, owner_id: Optional[str] = None) -> TransitionResult:
        new_plan = parse_plan(new_plan)
        price = self._purchasable_price(new_plan)
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id, owner_id)
            ensure_transition(subscription.status, Transition.SCHEDULE_PLAN_CHANGE)
            if subscription.plan == new_plan and not subscription.pending_plan:
                return self._noop(Transition.SCHEDULE_PLAN_CHANGE.value, subscription, "already_on_plan")
            version = subscription.version
            subscription.pending_plan = new_plan.value
            subscription.pending_amount = price
            subscription.pending_change_at = (
                subscription.trial_end if subscription.status == S.TRIAL else subscription.next_billing_date
            )
            saved = self._commit(tenant_id, lambda uow: uow.save_subscription(subscription, version), [])
        return TransitionResult(transition=Transition.SCHEDULE_PLAN_CHANGE.value, tenant_id=tenant_id,
                                subscription=saved)

    @_instrumented(Transition.CANCEL_PENDING_PLAN.value)
    def cancel_pending_plan(self, tenant_id: str, owner_id: Optional[str] = None) -> TransitionResult:
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id, owner_id)
            ensure_transition(subscription.status, Transition.CANCEL_PENDING_PLAN)
            if not subscription.pending_plan:
                return self._noop(Transition.CANCEL_PENDING_PLAN.value, subscription, "no_pending_plan")
            version = subscription.version
            subscription.clear_pending()
            saved = self._commit(tenant_id, lambda uow: uow.save_subscription(subscription, version), [])
        return TransitionResult(transition=Transition.CANCEL_PENDING_PLAN.value, tenant_id=tenant_id,
                                subscription=saved)

    @_instrumented("cancel")
    def cancel(self, tenant_id: str, mode: str, reason: str = "", idempotency_key: Optional[str] = None,
               owner_id: Optional[str] = None, changed_by: str = "user",
               today: Optional[datetime] = None) -> TransitionResult:
        try:
            mode = CancelMode(mode)
        except ValueError as exc:
            raise ValidationError(f"Unknown cancel mode '{mode}'.", code="invalid_cancel_mode") from exc
        transition = Transition.CANCEL_IMMEDIATE if mode == CancelMode.IMMEDIATE else Transition.CANCEL_SCHEDULED

        duplicate = self._duplicate(transition.value, tenant_id, idempotency_key)
        if duplicate:
            return duplicate

        with self.store.tenant_lock(tenant_id):
            duplicate = self._duplicate(transition.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            subscription = self._load(tenant_id, owner_id)
            if subscription.status in CANCEL_NOOP_STATUSES:
                return self._noop(transition.value, subscription, "already_ended")
            if mode == CancelMode.SCHEDULED:
                if subscription.status == S.PENDING_CANCEL:
                    return self._noop(transition.value, subscription, "already_scheduled")
                return self._cancel_scheduled(subscription, reason, changed_by)
            return self._cancel_immediate(subscription, reason, changed_by, idempotency_key, today)

    def _cancel_scheduled(self, subscription: SubscriptionRecord, reason: str, changed_by: str) -> TransitionResult:
        new_status = target_status(subscription.status, Transition.CANCEL_SCHEDULED)
        now = self.clock()
        previous = copy.deepcopy(subscription)
        subscription.status = new_status
        subscription.cancel_mode = CancelMode.SCHEDULED.value
        subscription.cancel_reason = reason
        subscription.canceled_at = now
        # Cleared so no external job auto-charges; kept for a possible revert.
        subscription.cancel_restore_billing_date = subscription.next_billing_date
        subscription.next_billing_date = None
        subscription.clear_pending()

        def write(uow: UnitOfWork) -> SubscriptionRecord:
            saved = uow.save_subscription(subscription, previous.version)
            history.record_transition(uow, saved, ChangeType.CANCEL, changed_by, now, previous=previous,
                                      note=reason)
            return saved

        saved = self._commit(subscription.tenant_id, write, [])
        return TransitionResult(
            transition=Transition.CANCEL_SCHEDULED.value,
            tenant_id=subscription.tenant_id,
            subscription=saved,
            detail={"effective_at": saved.current_period_end},
        )

    def _cancel_immediate(self, subscription: SubscriptionRecord, reason: str, changed_by: str,
                          idempotency_key: Optional[str], today: Optional[datetime]) -> TransitionResult:
        ensure_transition(subscription.status, Transition.CANCEL_IMMEDIATE)
        new_status = cancel_target_status(subscription)
        now = self.clock()

        refund_amount = 0
        billing_date = subscription.next_billing_date or subscription.cancel_restore_billing_date
        if subscription.plan != Plan.TRIAL and subscription.amount > 0:
            if not subscription.amount_period_days or subscription.amount_period_days <= 0:
                raise InvalidProrationBasis(
                    "Subscription has no positive amount period days.",
                    context={"tenant_id": subscription.tenant_id},
                )
            if subscription.current_period_start and billing_date:
                refund_amount = calculate_refund(
                    subscription.amount,
                    subscription.amount_period_days,
                    subscription.current_period_start,
                    billing_date,
                    today or now,
                )
        refund = self.orchestrator.refund_latest_charge(
            subscription.tenant_id,
            refund_amount,
            reason or "Subscription canceled (unused days)",
            idempotency_key,
        )

        previous = copy.deepcopy(subscription)
        subscription.status = new_status
        subscription.cancel_mode = CancelMode.IMMEDIATE.value
        subscription.cancel_reason = reason
        subscription.canceled_at = now
        subscription.current_period_end = now
        subscription.next_billing_date = None
        subscription.cancel_restore_billing_date = None
        subscription.clear_pending()
        refund_rows = self.orchestrator.build_refund_rows(
            refund,
            tenant_id=subscription.tenant_id,
            payment_type=PaymentType.CANCEL_REFUND,
            plan=previous.plan,
            reason=reason or "Subscription canceled (unused days)",
            idempotency_key=idempotency_key,
        )
        change_type = ChangeType.EXPIRE if new_status == S.EXPIRED else ChangeType.CANCEL

        def write(uow: UnitOfWork) -> SubscriptionRecord:
            payment_id = None
            if refund.processed:
                uow.apply_refund(refund.source.id, refund.refunded_amount)
            for row in refund_rows:
                payment_id = uow.insert_payment(row).id
            saved = uow.save_subscription(subscription, previous.version)
            history.record_terminal(
                uow, saved, change_type, changed_by, now,
                previous=previous, payment_id=payment_id, order_id=refund.order_id, note=reason,
            )
            return saved

        saved = self._commit(subscription.tenant_id, write, [row.order_id for row in refund_rows])
        return TransitionResult(
            transition=Transition.CANCEL_IMMEDIATE.value,
            tenant_id=subscription.tenant_id,
            refunded_amount=refund.refunded_amount,
            order_id=refund.order_id,
            payment_key=refund.result.payment_key if refund.result else None,
            refund_processed=refund.processed,
            subscription=saved,
            detail={"calculated_refund": refund_amount, "refund_skipped_reason": refund.skipped_reason},
        )

    @_instrumented(Transition.REVERT_CANCELLATION.value)
    def revert_cancellation(self, tenant_id: str, owner_id: Optional[str] = None) -> TransitionResult:
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id, owner_id)
            new_status = target_status(subscription.status, Transition.REVERT_CANCELLATION)
            if subscription.plan == Plan.TRIAL:
                new_status = S.TRIAL.value
            now = self.clock()
            previous = copy.deepcopy(subscription)
            subscription.status = new_status
            subscription.next_billing_date = subscription.cancel_restore_billing_date or subscription.current_period_end
            self._clear_cancellation(subscription)

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                saved = uow.save_subscription(subscription, previous.version)
                history.record_transition(uow, saved, ChangeType.REACTIVATE, "user", now, previous=previous)
                return saved

            saved = self._commit(tenant_id, write, [])
        return TransitionResult(transition=Transition.REVERT_CANCELLATION.value, tenant_id=tenant_id,
                                subscription=saved)

    @_instrumented(Transition.COMPLETE_CANCELLATION.value)
    def complete_cancellation(self, tenant_id: str, at: Optional[datetime] = None) -> TransitionResult:
        """Period-end step of a scheduled cancellation; callers decide when to run it."""

        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id)
            if subscription.status in CANCEL_NOOP_STATUSES:
                return self._noop(Transition.COMPLETE_CANCELLATION.value, subscription, "already_ended")
            new_status = target_status(subscription.status, Transition.COMPLETE_CANCELLATION)
            if subscription.plan == Plan.TRIAL:
                new_status = S.EXPIRED.value
            ended_at = at or subscription.current_period_end or self.clock()
            previous = copy.deepcopy(subscription)
            subscription.status = new_status
            subscription.current_period_end = ended_at
            subscription.next_billing_date = None
            subscription.cancel_restore_billing_date = None
            change_type = ChangeType.EXPIRE if new_status == S.EXPIRED else ChangeType.CANCEL

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                saved = uow.save_subscription(subscription, previous.version)
                history.record_terminal(uow, saved, change_type, "system", ended_at, previous=previous)
                return saved

            saved = self._commit(tenant_id, write, [])
        return TransitionResult(transition=Transition.COMPLETE_CANCELLATION.value, tenant_id=tenant_id,
                                subscription=saved)

    @_instrumented(Transition.EXPIRE.value)
    def expire(self, tenant_id: str, at: Optional[datetime] = None) -> TransitionResult:
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id)
            if subscription.status == S.EXPIRED:
                return self._noop(Transition.EXPIRE.value, subscription, "already_expired")
            new_status = target_status(subscription.status, Transition.EXPIRE)
            ended_at = at or self.clock()
            previous = copy.deepcopy(subscription)
            subscription.status = new_status
            if previous.status == S.TRIAL:
                subscription.current_period_end = ended_at
            subscription.next_billing_date = None
            subscription.clear_pending()

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                saved = uow.save_subscription(subscription, previous.version)
                history.record_terminal(uow, saved, ChangeType.EXPIRE, "system", ended_at, previous=previous)
                return saved

            saved = self._commit(tenant_id, write, [])
        return TransitionResult(transition=Transition.EXPIRE.value, tenant_id=tenant_id, subscription=saved)

    @_instrumented(Transition.RESUBSCRIBE.value)
    def resubscribe(self, tenant_id: str, plan: str, idempotency_key: Optional[str] = None,
                    owner_id: Optional[str] = None) -> TransitionResult:
        plan = parse_plan(plan)
        price = self._purchasable_price(plan)
        duplicate = self._duplicate(Transition.RESUBSCRIBE.value, tenant_id, idempotency_key)
        if duplicate:
            return duplicate

        with self.store.tenant_lock(tenant_id):
            duplicate = self._duplicate(Transition.RESUBSCRIBE.value, tenant_id, idempotency_key)
            if duplicate:
                return duplicate
            subscription = self._load(tenant_id, owner_id)
            if subscription.status == S.ACTIVE and subscription.plan == plan:
                return self._noop(Transition.RESUBSCRIBE.value, subscription, "already_active")
            ensure_transition(subscription.status, Transition.RESUBSCRIBE)
            return self._paid_activation(
                Transition.RESUBSCRIBE,
                subscription,
                plan.value,
                price,
                payment_type=PaymentType.RESUBSCRIBE,
                change_type=ChangeType.REACTIVATE,
                changed_by="user",
                idempotency_key=idempotency_key,
                now=self.clock(),
            )

    @_instrumented(Transition.ADMIN_EDIT.value)
    def admin_edit(self, tenant_id: str, changes: Dict[str, Any], admin_id: str, reason: str = "") -> TransitionResult:
        cleaned = self._clean_admin_changes(changes)
        with self.store.tenant_lock(tenant_id):
            subscription = self._load(tenant_id)
            ensure_transition(subscription.status, Transition.ADMIN_EDIT)
            previous = copy.deepcopy(subscription)
            changed = {key: value for key, value in cleaned.items() if getattr(subscription, key) != value}
            if not changed:
                return self._noop(Transition.ADMIN_EDIT.value, subscription, "no_changes")
            for key, value in changed.items():
                setattr(subscription, key, value)
            if "plan" in changed and "base_amount" not in changed:
                subscription.base_amount = plan_price(subscription.plan)
            if "plan" in changed:
                subscription.previous_plan = previous.plan
                subscription.previous_amount = previous.amount

            now = self.clock()
            log = ChangeLogRecord(
                tenant_id=tenant_id,
                changed_by=admin_id,
                reason=reason,
                previous_data=to_jsonable({key: getattr(previous, key) for key in changed}),
                new_data=to_jsonable(changed),
                changed_at=now,
            )
            opens_segment = bool(BILLING_FIELDS & set(changed))
            change_type = history.classify_admin_change(
                previous.plan, subscription.plan, previous.status, subscription.status
            )

            def write(uow: UnitOfWork) -> SubscriptionRecord:
                saved = uow.save_subscription(subscription, previous.version)
                uow.insert_change_log(log)
                if opens_segment:
                    record = history.record_terminal if saved.status in CANCEL_NOOP_STATUSES else history.record_transition
                    record(uow, saved, change_type, "admin", now, previous=previous, admin_id=admin_id, note=reason)
                return saved

            saved = self._commit(tenant_id, write, [])
        return TransitionResult(
            transition=Transition.ADMIN_EDIT.value,
            tenant_id=tenant_id,
            subscription=saved,
            detail={"changed_fields": sorted(changed), "change_type": change_type if opens_segment else None},
        )

    def _clean_admin_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - ADMIN_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}.",
                code="unknown_field",
                context={"fields": sorted(unknown)},
            )
        cleaned: Dict[str, Any] = {}
        for key, value in changes.items():
            if key == "status":
                if value in RESERVED_STATUSES:
                    raise ValidationError(
                        f"Status '{value}' is reserved and cannot be set.",
                        code="reserved_status",
                        context={"status": value},
                    )
                try:
                    value = SubscriptionStatus(value).value
                except ValueError as exc:
                    raise ValidationError(f"Unknown status '{value}'.", code="invalid_status") from exc
            elif key in ("plan", "pending_plan"):
                value = parse_plan(value, allow_trial=True).value if value is not None else None
            elif key == "amount_period_days":
                if value is None or int(value) <= 0:
                    raise InvalidProrationBasis(
                        "Amount period days must be positive.",
                        context={"amount_period_days": value},
                    )
                value = int(value)
            elif key in ("amount", "base_amount", "pending_amount"):
                if value is not None:
                    value = int(value)
                    if value < 0:
                        raise ValidationError(f"{key} cannot be negative.", code="invalid_amount")
            elif key in DATETIME_FIELDS and isinstance(value, str):
                parsed = parse_datetime(value)
                if parsed is None:
                    raise ValidationError(f"{key} is not a valid datetime.", code="invalid_datetime")
                value = parsed
            cleaned[key] = value
        return cleaned
