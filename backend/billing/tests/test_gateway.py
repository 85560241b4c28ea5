import base64
from unittest import mock

import pytest
import requests

from billing.exceptions import GatewayConfigurationError, GatewayError, GatewayTimeoutError
from billing.services.gateway import Payer, PaymentGateway, TossPaymentsGateway


def _response(status_code=200, payload=None):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def toss():
    return TossPaymentsGateway(base_url="https://pay.example.com/v1", secret_key="test_sk", timeout=3)


def test_charge_posts_billing_key_request(toss):
    payload = {
        "paymentKey": "pk_1",
        "status": "DONE",
        "method": "card",
        "card": {"number": "4330****1234"},
        "receipt": {"url": "https://receipt.example.com/pk_1"},
    }
    with mock.patch("billing.services.gateway.requests.request", return_value=_response(payload=payload)) as request:
        result = toss.charge(
            billing_key="bk_1",
            amount=39000,
            order_id="FIRST_1_tenant",
            order_name="Portal Basic plan",
            payer=Payer(customer_key="tenant", email="owner@example.com", name="Acme"),
            idempotency_key="key-1:charge",
        )

    assert result.payment_key == "pk_1"
    assert result.receipt_url == "https://receipt.example.com/pk_1"
    args, kwargs = request.call_args
    assert args == ("POST", "https://pay.example.com/v1/billing/bk_1")
    assert kwargs["json"]["amount"] == 39000
    assert kwargs["json"]["customerKey"] == "tenant"
    assert kwargs["timeout"] == 3
    token = base64.b64encode(b"test_sk:").decode()
    assert kwargs["headers"]["Authorization"] == f"Basic {token}"
    assert kwargs["headers"]["Idempotency-Key"] == "key-1:charge"


def test_refund_posts_cancel(toss):
    with mock.patch(
        "billing.services.gateway.requests.request",
        return_value=_response(payload={"paymentKey": "pk_1", "status": "PARTIAL_CANCELED"}),
    ) as request:
        result = toss.refund(payment_key="pk_1", reason="plan change", amount=1000)

    assert result.status == "PARTIAL_CANCELED"
    args, kwargs = request.call_args
    assert args == ("POST", "https://pay.example.com/v1/payments/pk_1/cancel")
    assert kwargs["json"] == {"cancelReason": "plan change", "cancelAmount": 1000}
    assert "Idempotency-Key" not in kwargs["headers"]


def test_get_payment_reports_cancelable_amount(toss):
    payload = {"paymentKey": "pk_1", "totalAmount": 39000, "cancels": [{"cancelAmount": 10000}, {"cancelAmount": 5000}]}
    with mock.patch("billing.services.gateway.requests.request", return_value=_response(payload=payload)):
        snapshot = toss.get_payment("pk_1")

    assert snapshot.cancelable_amount == 24000


def test_rejection_carries_gateway_code(toss):
    body = {"code": "REJECT_CARD_COMPANY", "message": "Card company rejected the payment."}
    with mock.patch("billing.services.gateway.requests.request", return_value=_response(400, body)):
        with pytest.raises(GatewayError) as exc:
            toss.get_payment("pk_1")

    assert exc.value.gateway_code == "REJECT_CARD_COMPANY"
    assert exc.value.status_code == 400
    assert exc.value.message == "Card company rejected the payment."
    assert exc.value.retryable is False


def test_server_error_is_retryable(toss):
    with mock.patch("billing.services.gateway.requests.request", return_value=_response(503, {})):
        with pytest.raises(GatewayError) as exc:
            toss.get_payment("pk_1")

    assert exc.value.retryable is True


def test_timeout_maps_to_retryable_timeout(toss):
    with mock.patch("billing.services.gateway.requests.request", side_effect=requests.exceptions.Timeout()):
        with pytest.raises(GatewayTimeoutError) as exc:
            toss.get_payment("pk_1")

    assert exc.value.code == "gateway_timeout"
    assert exc.value.retryable is True


def test_invalid_json_is_not_retryable(toss):
    response = _response(payload={})
    response.json.side_effect = ValueError("no json")
    with mock.patch("billing.services.gateway.requests.request", return_value=response):
        with pytest.raises(GatewayError) as exc:
            toss.get_payment("pk_1")

    assert exc.value.retryable is False


def test_missing_secret_fails_before_any_request():
    gateway = TossPaymentsGateway(base_url="https://pay.example.com/v1", secret_key="")

    with mock.patch("billing.services.gateway.requests.request") as request:
        with pytest.raises(GatewayConfigurationError):
            gateway.get_payment("pk_1")

    request.assert_not_called()


def test_gateway_interface_requires_every_operation():
    class ChargeOnly(PaymentGateway):
        def charge(self, **kwargs):
            return None

    with pytest.raises(TypeError):
        PaymentGateway()
    with pytest.raises(TypeError):
        ChargeOnly()
