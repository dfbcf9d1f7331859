from decimal import Decimal

import pytest
import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, GatewayUnavailable
from app.utils.razorpay_client import (
    RazorpayGateway,
    build_payment_gateway,
    to_minor_units,
    verify_payment_signature,
    verify_webhook_signature,
)
from tests.conftest import hmac_hex


class StubOrders:
    """Replaces ``client.order`` so no request leaves the process."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create(self, data=None, **options):
        self.calls.append((data, options))
        if self.error is not None:
            raise self.error
        return {
            "id": "order_Nx1",
            "amount": data["amount"],
            "currency": data["currency"],
            "receipt": data["receipt"],
            "status": "created",
        }


@pytest.fixture
def client():
    return razorpay.Client(auth=("rzp_test_key", "rzp_test_secret"))


@pytest.fixture
def gateway(client):
    return RazorpayGateway(
        "rzp_test_key", "rzp_test_secret", webhook_secret="whsec_test", client=client
    )


def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("999.00")) == 99900
    assert to_minor_units(Decimal("269.105")) == 26911


def test_create_order_sends_minor_units(client, gateway):
    client.order = StubOrders()

    order = gateway.create_order(
        Decimal("269.10"), "inr", "TXN_1700000000000_ABC123", notes={"kind": "renewal"}
    )

    assert order.order_id == "order_Nx1"
    assert order.amount_minor == 26910
    assert order.currency == "INR"
    data, options = client.order.calls[0]
    assert data["receipt"] == "TXN_1700000000000_ABC123"
    assert data["notes"] == {"kind": "renewal"}
    assert options["timeout"] == gateway.timeout


@pytest.mark.parametrize(
    "error",
    [
        BadRequestError("The amount must be at least INR 1.00"),
        ServerError("Internal error"),
        requests.ConnectionError("connection reset"),
    ],
)
def test_gateway_errors_become_unavailable(client, gateway, error):
    client.order = StubOrders(error=error)

    with pytest.raises(GatewayUnavailable) as exc_info:
        gateway.create_order(Decimal("10.00"), "INR", "TXN_1")
    assert exc_info.value.retryable


def test_payment_signature_checked_by_sdk(gateway):
    signature = hmac_hex("order_1|pay_1", "rzp_test_secret")

    assert gateway.verify_signature("order_1", "pay_1", signature)
    assert not gateway.verify_signature("order_1", "pay_2", signature)
    assert not gateway.verify_signature("order_1", "pay_1", "")
    assert verify_payment_signature("order_1", "pay_1", signature, "rzp_test_secret")
    assert not verify_payment_signature("order_1", "pay_1", signature, "other")


def test_webhook_signature_checked_by_sdk(gateway):
    body = b'{"event":"payment.captured"}'
    signature = hmac_hex(body, "whsec_test")

    assert gateway.verify_webhook(body, signature)
    assert not gateway.verify_webhook(body + b" ", signature)
    assert not gateway.verify_webhook(body, None)
    assert not verify_webhook_signature(body, signature, "")
    assert not verify_webhook_signature(b"\xff\xfe", signature, "whsec_test")


def test_gateway_requires_credentials():
    with pytest.raises(ConfigurationError):
        build_payment_gateway(Settings(razorpay_key_id="", razorpay_key_secret=""))

    gateway = build_payment_gateway(
        Settings(razorpay_key_id="rzp_live_key", razorpay_key_secret="secret")
    )
    assert gateway.key_id == "rzp_live_key"
    assert isinstance(gateway.client, razorpay.Client)
