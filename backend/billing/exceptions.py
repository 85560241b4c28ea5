"""Typed error taxonomy for the billing core.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
tell which failures are safe to repeat with the same idempotency key.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base error for subscription lifecycle and payment operations."""

    default_code = "billing_error"
    default_retryable = False
    category = "billing"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(BillingError):
    default_code = "validation_error"
    category = "validation"


class SubscriptionNotFound(ValidationError):
    default_code = "subscription_not_found"


class InvalidProrationBasis(ValidationError):
    default_code = "invalid_proration_basis"


class BillingKeyMissing(ValidationError):
    default_code = "billing_key_missing"


class DuplicateCardError(ValidationError):
    default_code = "duplicate_card"


class CardLimitExceeded(ValidationError):
    default_code = "card_limit_exceeded"


class CardNotFound(ValidationError):
    default_code = "card_not_found"


class AuthorizationError(BillingError):
    default_code = "forbidden"
    category = "authorization"


class ConflictError(BillingError):
    default_code = "conflict"
    category = "conflict"


class InvalidTransition(ConflictError):
    default_code = "invalid_transition"


class ConcurrentModificationError(ConflictError):
    default_code = "concurrent_modification"
    default_retryable = True


class TenantLockTimeout(ConflictError):
    default_code = "tenant_busy"
    default_retryable = True


class GatewayError(BillingError):
    """Raised when the payment gateway rejects or fails a call."""

    default_code = "gateway_error"
    category = "gateway"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        gateway_code: Optional[str] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if retryable is None and status_code is not None:
            retryable = status_code == 429 or status_code >= 500
        super().__init__(message, code=code, retryable=retryable, context=context)
        self.status_code = status_code
        self.gateway_code = gateway_code
        if status_code is not None:
            self.context.setdefault("status_code", status_code)
        if gateway_code:
            self.context.setdefault("gateway_code", gateway_code)


class GatewayTimeoutError(GatewayError):
    default_code = "gateway_timeout"
    default_retryable = True


class GatewayConfigurationError(GatewayError):
    default_code = "gateway_not_configured"


class PartialPaymentError(GatewayError):
    """The charge failed after a refund already went through.

    Never retried automatically; reconciliation is an operational follow-up.
    """

    default_code = "partial_payment"

    def __init__(
        self,
        message: str,
        *,
        refunded_amount: int,
        refund_order_id: Optional[str] = None,
        cause: Optional[GatewayError] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            status_code=getattr(cause, "status_code", None),
            gateway_code=getattr(cause, "gateway_code", None),
            retryable=False,
            context=context,
        )
        self.refund_processed = True
        self.refunded_amount = refunded_amount
        self.refund_order_id = refund_order_id
        self.context.update(
            {
                "refund_processed": True,
                "refunded_amount": refunded_amount,
                "refund_order_id": refund_order_id,
            }
        )


class PersistenceError(BillingError):
    default_code = "persistence_error"
    default_retryable = True
    category = "persistence"
