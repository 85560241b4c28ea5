import logging
from typing import List

from django.apps import AppConfig

logger = logging.getLogger(__name__)


def missing_plan_prices() -> List[str]:
    """Plans that have no configured list price and fall back to the defaults."""
    from django.conf import settings

    from .constants import Plan

    configured = getattr(settings, "BILLING_PLAN_PRICES", None) or {}
    return [plan.value for plan in Plan if plan.value not in configured]


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        missing = missing_plan_prices()
        if missing:
            logger.warning("No configured price for plans %s; using built-in defaults.", missing)
