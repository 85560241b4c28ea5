"""Celery tasks for billing notifications."""
from __future__ import annotations

import logging
from typing import Any, Dict

import requests
from celery import shared_task
from django.conf import settings
from requests.exceptions import RequestException

from billing.observability.metrics import NOTIFICATION_FAILURE_COUNT

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def deliver_notification(event: str, payload: Dict[str, Any]) -> bool:
    """POST one transition event to the notification webhook; best effort only."""

    url = getattr(settings, "BILLING_NOTIFICATION_WEBHOOK_URL", "")
    if not url:
        logger.debug("Notification webhook not configured; dropping %s", event)
        return False

    timeout = float(getattr(settings, "BILLING_NOTIFICATION_TIMEOUT_SECONDS", 5))
    try:
        response = requests.post(url, json={"event": event, **payload}, timeout=timeout)
        response.raise_for_status()
    except RequestException as exc:
        NOTIFICATION_FAILURE_COUNT.labels(event=event).inc()
        logger.warning("Billing notification %s failed: %s", event, exc)
        return False

    logger.info("Billing notification %s delivered", event)
    return True
