"""HTTP client for the Toss Payments billing-key API."""
from __future__ import annotations

import abc
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from billing.exceptions import GatewayConfigurationError, GatewayError, GatewayTimeoutError
from billing.observability.metrics import GATEWAY_CALL_COUNT, GATEWAY_CALL_LATENCY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payer:
    customer_key: str
    email: str = ""
    name: str = ""


@dataclass(frozen=True)
class ChargeResult:
    payment_key: str
    status: str
    method: str = ""
    card_info: Optional[Dict[str, Any]] = None
    receipt_url: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class RefundResult:
    payment_key: str
    status: str
    receipt_url: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class PaymentSnapshot:
    payment_key: str
    total_amount: int
    cancels: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def cancelable_amount(self) -> int:
        canceled = sum(int(item.get("cancelAmount") or 0) for item in self.cancels)
        return max(0, self.total_amount - canceled)


class PaymentGateway(abc.ABC):
    """Interface the orchestrator talks to."""

    @abc.abstractmethod
    def charge(self, *, billing_key: str, amount: int, order_id: str, order_name: str, payer: Payer,
               idempotency_key: Optional[str] = None) -> ChargeResult:
        ...

    @abc.abstractmethod
    def refund(self, *, payment_key: str, reason: str, amount: int,
               idempotency_key: Optional[str] = None) -> RefundResult:
        ...

    @abc.abstractmethod
    def get_payment(self, payment_key: str) -> PaymentSnapshot:
        """Current totals and cancellations of one payment."""


def _receipt_url(data: Dict[str, Any]) -> str:
    receipt = data.get("receipt") or {}
    return receipt.get("url") or ""


class TossPaymentsGateway(PaymentGateway):
    def __init__(self, *, base_url: Optional[str] = None, secret_key: Optional[str] = None,
                 timeout: Optional[float] = None) -> None:
        self.base_url = (base_url or getattr(settings, "TOSS_API_URL", "https://api.tosspayments.com/v1")).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else getattr(settings, "TOSS_SECRET_KEY", "")
        self.timeout = timeout or float(getattr(settings, "BILLING_GATEWAY_TIMEOUT_SECONDS", 10))

    def _headers(self, idempotency_key: Optional[str]) -> Dict[str, str]:
        if not self.secret_key:
            raise GatewayConfigurationError("TOSS_SECRET_KEY is not configured.")
        token = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        headers = {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, operation: str, method: str, path: str, *, payload: Optional[Dict[str, Any]] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = self._headers(idempotency_key)
        url = f"{self.base_url}{path}"
        started = time.monotonic()
        outcome = "error"
        try:
            response = requests.request(method, url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                logger.error("Invalid JSON from gateway %s: %s", operation, response.text[:200])
                raise GatewayError("Invalid JSON response received from payment gateway.",
                                   retryable=False) from exc
            outcome = "success"
            return data
        except Timeout as exc:
            outcome = "timeout"
            logger.error("Gateway %s timed out after %ss", operation, self.timeout)
            raise GatewayTimeoutError(
                f"Payment gateway did not answer within {self.timeout} seconds.",
                context={"operation": operation},
            ) from exc
        except ConnectionError as exc:
            logger.error("Gateway %s connection failed: %s", operation, exc)
            raise GatewayError(
                "Failed to connect to the payment gateway.",
                retryable=True,
                context={"operation": operation},
            ) from exc
        except HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            gateway_code, message = None, f"HTTP error {status_code}"
            try:
                body = exc.response.json()
                gateway_code = body.get("code")
                message = body.get("message") or message
            except (ValueError, AttributeError):
                pass
            logger.error("Gateway %s rejected (%s %s): %s", operation, status_code, gateway_code, message)
            raise GatewayError(
                message,
                status_code=status_code,
                gateway_code=gateway_code,
                context={"operation": operation},
            ) from exc
        except RequestException as exc:
            logger.error("Gateway %s failed due to network error: %s", operation, exc)
            raise GatewayError(
                f"Request failed due to network error: {exc}",
                retryable=True,
                context={"operation": operation},
            ) from exc
        finally:
            GATEWAY_CALL_COUNT.labels(operation=operation, outcome=outcome).inc()
            GATEWAY_CALL_LATENCY.labels(operation=operation).observe(time.monotonic() - started)

    def charge(self, *, billing_key, amount, order_id, order_name, payer, idempotency_key=None):
        payload = {
            "customerKey": payer.customer_key,
            "amount": amount,
            "orderId": order_id,
            "orderName": order_name,
        }
        if payer.email:
            payload["customerEmail"] = payer.email
        if payer.name:
            payload["customerName"] = payer.name
        logger.info("Charging billing key for order %s amount=%s", order_id, amount)
        data = self._request("charge", "POST", f"/billing/{billing_key}", payload=payload,
                             idempotency_key=idempotency_key)
        return ChargeResult(
            payment_key=data.get("paymentKey", ""),
            status=data.get("status", ""),
            method=data.get("method") or "",
            card_info=data.get("card"),
            receipt_url=_receipt_url(data),
            raw=data,
        )

    def refund(self, *, payment_key, reason, amount, idempotency_key=None):
        logger.info("Refunding payment %s amount=%s", payment_key, amount)
        data = self._request(
            "refund",
            "POST",
            f"/payments/{payment_key}/cancel",
            payload={"cancelReason": reason, "cancelAmount": amount},
            idempotency_key=idempotency_key,
        )
        return RefundResult(
            payment_key=data.get("paymentKey", payment_key),
            status=data.get("status", ""),
            receipt_url=_receipt_url(data),
            raw=data,
        )

    def get_payment(self, payment_key):
        data = self._request("get_payment", "GET", f"/payments/{payment_key}")
        return PaymentSnapshot(
            payment_key=data.get("paymentKey", payment_key),
            total_amount=int(data.get("totalAmount") or 0),
            cancels=list(data.get("cancels") or []),
        )
