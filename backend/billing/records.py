"""Plain snapshots exchanged between the services and any billing store."""
from __future__ import annotations

import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional


def new_id() -> str:
    return str(uuid.uuid4())


def to_jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


class _Record:
    def as_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass
class SubscriptionRecord(_Record):
    tenant_id: str
    plan: str
    status: str
    amount: int
    base_amount: int
    amount_period_days: int
    owner_id: str = ""
    email: str = ""
    brand_name: str = ""
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    billing_key: Optional[str] = None
    card_info: Optional[Dict[str, Any]] = None
    card_alias: Optional[str] = None
    primary_card_id: Optional[str] = None
    pending_plan: Optional[str] = None
    pending_amount: Optional[int] = None
    pending_change_at: Optional[datetime] = None
    cancel_mode: Optional[str] = None
    cancel_reason: str = ""
    canceled_at: Optional[datetime] = None
    cancel_restore_billing_date: Optional[datetime] = None
    previous_plan: Optional[str] = None
    previous_amount: Optional[int] = None
    trial_end: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def clear_pending(self) -> None:
        self.pending_plan = None
        self.pending_amount = None
        self.pending_change_at = None


@dataclass
class PaymentRecord(_Record):
    tenant_id: str
    order_id: str
    amount: int
    transaction_type: str
    type: str
    status: str
    id: str = field(default_factory=new_id)
    payment_key: Optional[str] = None
    plan: Optional[str] = None
    order_name: str = ""
    method: str = ""
    card_info: Optional[Dict[str, Any]] = None
    receipt_url: str = ""
    reason: str = ""
    original_payment_id: Optional[str] = None
    refunded_amount: int = 0
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def refundable_amount(self) -> int:
        return max(0, self.amount - self.refunded_amount)


@dataclass
class HistoryRecord(_Record):
    tenant_id: str
    plan: str
    status: str
    amount: int
    period_start: datetime
    change_type: str
    changed_at: datetime
    id: str = field(default_factory=new_id)
    period_end: Optional[datetime] = None
    changed_by: str = "system"
    changed_by_admin_id: Optional[str] = None
    owner_id: str = ""
    email: str = ""
    previous_plan: Optional[str] = None
    previous_status: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    billing_date: Optional[datetime] = None
    note: str = ""

    @property
    def is_open(self) -> bool:
        return self.period_end is None


@dataclass
class CardRecord(_Record):
    tenant_id: str
    billing_key: str
    card_info: Dict[str, Any]
    id: str = field(default_factory=new_id)
    owner_id: str = ""
    alias: Optional[str] = None
    is_primary: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def number(self) -> str:
        return str((self.card_info or {}).get("number") or "")


@dataclass
class ChangeLogRecord(_Record):
    tenant_id: str
    changed_by: str
    previous_data: Dict[str, Any]
    new_data: Dict[str, Any]
    changed_at: datetime
    id: str = field(default_factory=new_id)
    reason: str = ""
