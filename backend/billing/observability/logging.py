"""Structured logging helper for billing transitions and gateway calls."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from billing.records import to_jsonable

logger = logging.getLogger("billing")


def billing_event_payload(message: str, tenant_id: Optional[str] = None, actor: Optional[str] = None,
                          extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flat dict of the event; ``None`` fields are left out so log lines stay short."""

    fields = {"tenant_id": tenant_id, "actor": actor, **(extra or {})}
    payload: Dict[str, Any] = {"message": message}
    payload.update({key: to_jsonable(value) for key, value in fields.items() if value is not None})
    return payload


def log_billing_event(*, message: str, tenant_id: Optional[str] = None, actor: Optional[str] = None,
                      extra: Optional[Dict[str, Any]] = None, level: int = logging.INFO) -> None:
    logger.log(level, billing_event_payload(message, tenant_id, actor, extra))
