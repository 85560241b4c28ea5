"""Management command reporting billing ledger and card registry inconsistencies."""
from __future__ import annotations

from typing import List, Optional

from django.core.management.base import BaseCommand, CommandError

from billing.constants import PaymentStatus, TransactionType, max_cards
from billing.records import SubscriptionRecord
from billing.store.base import BillingStore, get_default_store


def audit_subscription(store: BillingStore, subscription: SubscriptionRecord) -> List[str]:
    tenant_id = subscription.tenant_id
    problems: List[str] = []

    open_segments = [row for row in store.history_for_tenant(tenant_id) if row.is_open]
    if len(open_segments) > 1:
        problems.append(f"{tenant_id}: {len(open_segments)} open history segments")

    cards = store.list_cards(tenant_id)
    primaries = [card for card in cards if card.is_primary]
    if len(cards) > max_cards():
        problems.append(f"{tenant_id}: {len(cards)} cards exceed the limit of {max_cards()}")
    if cards and len(primaries) != 1:
        problems.append(f"{tenant_id}: {len(primaries)} primary cards among {len(cards)}")
    primary_key = primaries[0].billing_key if len(primaries) == 1 else None
    if cards and subscription.billing_key != primary_key:
        problems.append(f"{tenant_id}: cached billing key does not match the primary card")

    for payment in store.list_payments(tenant_id):
        if payment.transaction_type != TransactionType.CHARGE or payment.status != PaymentStatus.DONE:
            continue
        if payment.refunded_amount > payment.amount:
            problems.append(
                f"{tenant_id}: payment {payment.order_id} refunded {payment.refunded_amount} of {payment.amount}"
            )
    return problems


class Command(BaseCommand):
    help = "Check subscription history, card registry and refund ledger invariants (read-only)."
    stealth_options = ("store",)

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--tenant-id",
            dest="tenant_ids",
            action="append",
            help="Audit only the given tenant. Can be supplied multiple times.",
        )

    def handle(self, *args, **options) -> None:
        store: BillingStore = options.get("store") or get_default_store()
        tenant_ids: Optional[List[str]] = options.get("tenant_ids")

        if tenant_ids:
            subscriptions = []
            for tenant_id in tenant_ids:
                subscription = store.get_subscription(tenant_id)
                if subscription is None:
                    raise CommandError(f"No subscription for tenant {tenant_id}.")
                subscriptions.append(subscription)
        else:
            subscriptions = store.list_subscriptions()

        problems: List[str] = []
        for subscription in subscriptions:
            problems.extend(audit_subscription(store, subscription))

        if problems:
            for problem in problems:
                self.stderr.write(self.style.ERROR(problem))
            raise CommandError(f"{len(problems)} billing invariant violation(s) found.")

        self.stdout.write(self.style.SUCCESS(f"Audited {len(subscriptions)} subscription(s); no violations."))
