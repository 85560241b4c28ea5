"""Per-tenant payment instruments and the subscription's primary-card cache."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from billing.constants import max_cards
from billing.exceptions import (
    CardLimitExceeded,
    CardNotFound,
    DuplicateCardError,
    SubscriptionNotFound,
    ValidationError,
)
from billing.observability.logging import log_billing_event
from billing.records import CardRecord, SubscriptionRecord
from billing.services.state_machine import ensure_owner
from billing.store.base import BillingStore, UnitOfWork, get_default_store

logger = logging.getLogger(__name__)


def apply_primary_cache(subscription: SubscriptionRecord, card: Optional[CardRecord]) -> None:
    """Mirror ``card`` into the subscription's denormalised primary fields."""

    if card is None:
        subscription.billing_key = None
        subscription.card_info = None
        subscription.card_alias = None
        subscription.primary_card_id = None
        return
    subscription.billing_key = card.billing_key
    subscription.card_info = dict(card.card_info or {})
    subscription.card_alias = card.alias
    subscription.primary_card_id = card.id


def register_primary_card(uow: UnitOfWork, subscription: SubscriptionRecord, cards: List[CardRecord],
                          billing_key: str, card_info: Dict[str, Any], alias: Optional[str] = None,
                          existing: Optional[CardRecord] = None) -> CardRecord:
    """Make the given instrument primary inside ``uow`` and update the cache on ``subscription``.

    An already registered card with the same number is promoted instead of duplicated.
    """

    number = str((card_info or {}).get("number") or "")
    if existing is None:
        existing = next((card for card in cards if number and card.number == number), None)
    for card in cards:
        if card.is_primary and (existing is None or card.id != existing.id):
            uow.update_card(replace(card, is_primary=False))
    if existing is not None:
        primary = uow.update_card(
            replace(existing, billing_key=billing_key, card_info=dict(card_info), is_primary=True,
                    alias=alias if alias is not None else existing.alias)
        )
    else:
        if len(cards) >= max_cards():
            raise CardLimitExceeded(f"A tenant can register at most {max_cards()} cards.")
        primary = uow.insert_card(
            CardRecord(
                tenant_id=subscription.tenant_id,
                owner_id=subscription.owner_id,
                billing_key=billing_key,
                card_info=dict(card_info),
                alias=alias,
                is_primary=True,
            )
        )
    apply_primary_cache(subscription, primary)
    return primary


def _primary_first(cards: List[CardRecord]) -> List[CardRecord]:
    return sorted(cards, key=lambda card: not card.is_primary)


class CardRegistry:
    def __init__(self, store: Optional[BillingStore] = None) -> None:
        self.store = store or get_default_store()

    def _subscription(self, tenant_id: str, owner_id: Optional[str]) -> SubscriptionRecord:
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription for tenant {tenant_id}.", context={"tenant_id": tenant_id})
        ensure_owner(subscription, owner_id)
        return subscription

    def _card(self, tenant_id: str, card_id: str) -> CardRecord:
        card = self.store.get_card(card_id)
        if card is None or card.tenant_id != tenant_id:
            raise CardNotFound("Card not found.", context={"tenant_id": tenant_id, "card_id": card_id})
        return card

    def list_cards(self, tenant_id: str, owner_id: Optional[str] = None) -> List[CardRecord]:
        subscription = self._subscription(tenant_id, owner_id)
        cards = self.store.list_cards(tenant_id)
        if cards or not subscription.billing_key:
            return _primary_first(cards)

        # Legacy subscriptions cached a billing key before the registry existed.
        with self.store.tenant_lock(tenant_id):
            subscription = self._subscription(tenant_id, owner_id)
            cards = self.store.list_cards(tenant_id)
            if cards or not subscription.billing_key:
                return _primary_first(cards)
            with self.store.atomic() as uow:
                card = register_primary_card(
                    uow,
                    subscription,
                    [],
                    subscription.billing_key,
                    subscription.card_info or {},
                    alias=subscription.card_alias,
                )
                uow.save_subscription(subscription, subscription.version)
        logger.info("Adopted cached billing key as primary card for tenant %s", tenant_id)
        return [card]

    def add_card(self, tenant_id: str, billing_key: str, card_info: Dict[str, Any], alias: Optional[str] = None,
                 set_as_primary: bool = False, owner_id: Optional[str] = None) -> CardRecord:
        if not billing_key:
            raise ValidationError("Billing key is required.", code="billing_key_required")
        card_info = dict(card_info or {})
        number = str(card_info.get("number") or "")

        with self.store.tenant_lock(tenant_id):
            subscription = self._subscription(tenant_id, owner_id)
            cards = self.store.list_cards(tenant_id)
            if number and any(card.number == number for card in cards):
                raise DuplicateCardError("Card is already registered.", context={"number": number})
            if len(cards) >= max_cards():
                raise CardLimitExceeded(
                    f"A tenant can register at most {max_cards()} cards.",
                    context={"tenant_id": tenant_id, "count": len(cards)},
                )

            make_primary = set_as_primary or not cards
            with self.store.atomic() as uow:
                if make_primary:
                    card = register_primary_card(uow, subscription, cards, billing_key, card_info, alias=alias)
                    uow.save_subscription(subscription, subscription.version)
                else:
                    card = uow.insert_card(
                        CardRecord(
                            tenant_id=tenant_id,
                            owner_id=subscription.owner_id,
                            billing_key=billing_key,
                            card_info=card_info,
                            alias=alias,
                        )
                    )

        log_billing_event(
            message="billing.card.added",
            tenant_id=tenant_id,
            actor=owner_id,
            extra={"card_id": card.id, "is_primary": card.is_primary},
        )
        return card

    def set_primary(self, tenant_id: str, card_id: str, owner_id: Optional[str] = None) -> CardRecord:
        with self.store.tenant_lock(tenant_id):
            subscription = self._subscription(tenant_id, owner_id)
            card = self._card(tenant_id, card_id)
            if card.is_primary and subscription.billing_key == card.billing_key:
                return card
            cards = self.store.list_cards(tenant_id)
            with self.store.atomic() as uow:
                card = register_primary_card(uow, subscription, cards, card.billing_key, card.card_info,
                                             alias=card.alias, existing=card)
                uow.save_subscription(subscription, subscription.version)

        log_billing_event(message="billing.card.primary_changed", tenant_id=tenant_id, actor=owner_id,
                          extra={"card_id": card.id})
        return card

    def update_alias(self, tenant_id: str, card_id: str, alias: Optional[str],
                     owner_id: Optional[str] = None) -> CardRecord:
        with self.store.tenant_lock(tenant_id):
            subscription = self._subscription(tenant_id, owner_id)
            card = self._card(tenant_id, card_id)
            with self.store.atomic() as uow:
                card = uow.update_card(replace(card, alias=alias))
                if card.is_primary:
                    subscription.card_alias = alias
                    uow.save_subscription(subscription, subscription.version)
        return card

    def remove_card(self, tenant_id: str, card_id: str, owner_id: Optional[str] = None) -> Optional[CardRecord]:
        """Delete a card; returns the card that is primary afterwards, if any."""

        with self.store.tenant_lock(tenant_id):
            subscription = self._subscription(tenant_id, owner_id)
            card = self._card(tenant_id, card_id)
            remaining = [row for row in self.store.list_cards(tenant_id) if row.id != card.id]
            promoted = next((row for row in remaining if row.is_primary), None)

            with self.store.atomic() as uow:
                uow.delete_card(card.id)
                if card.is_primary:
                    promoted = None
                    if remaining:
                        promoted = uow.update_card(replace(remaining[0], is_primary=True))
                    apply_primary_cache(subscription, promoted)
                    uow.save_subscription(subscription, subscription.version)

        log_billing_event(
            message="billing.card.removed",
            tenant_id=tenant_id,
            actor=owner_id,
            extra={"card_id": card_id, "promoted_card_id": promoted.id if promoted else None},
        )
        return promoted
