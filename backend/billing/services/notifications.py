"""Fire-and-forget notification of completed transitions."""
from __future__ import annotations

import logging
from typing import Any, Dict

from django.conf import settings

from billing.observability.metrics import NOTIFICATION_FAILURE_COUNT

logger = logging.getLogger(__name__)


def notifications_enabled() -> bool:
    return bool(
        getattr(settings, "BILLING_NOTIFICATIONS_ENABLED", False)
        and getattr(settings, "BILLING_NOTIFICATION_WEBHOOK_URL", "")
    )


def notify_transition(event: str, payload: Dict[str, Any]) -> bool:
    """Queue one webhook delivery; returns whether it was enqueued.

    Broker failures are logged and counted, never raised to the caller.
    """

    if not notifications_enabled():
        return False

    from billing.tasks import deliver_notification  # Lazy import to avoid circular dependency

    try:
        deliver_notification.delay(event, payload)
    except Exception:  # noqa: BLE001 - any broker failure is non-fatal here
        NOTIFICATION_FAILURE_COUNT.labels(event=event).inc()
        logger.exception("Failed to enqueue billing notification %s", event)
        return False
    return True
