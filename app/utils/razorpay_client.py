# app/utils/razorpay_client.py
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol, Union

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError,
    ServerError,
    SignatureVerificationError,
)

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, GatewayUnavailable

logger = logging.getLogger(__name__)

# signature checks are local HMACs and need no API credentials
_utility = razorpay.Utility()


@dataclass
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str
    receipt: str
    status: str = "created"
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """The narrow contract the engine consumes from a payment gateway."""

    key_id: str

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder: ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool: ...

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> bool: ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def verify_payment_signature(
    order_id: str, payment_id: str, signature: Optional[str], secret: str
) -> bool:
    """Checkout signature: HMAC-SHA256 of ``order_id|payment_id``."""
    if not (order_id and payment_id and signature and secret):
        return False
    try:
        return bool(
            _utility.verify_signature(f"{order_id}|{payment_id}", signature, secret)
        )
    except SignatureVerificationError:
        return False


def verify_webhook_signature(
    body: Union[bytes, str], signature: Optional[str], secret: str
) -> bool:
    if not (signature and secret):
        return False
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return bool(_utility.verify_webhook_signature(body, signature, secret))
    except (SignatureVerificationError, UnicodeDecodeError):
        return False


class RazorpayGateway:
    """Orders and signature checks through the Razorpay SDK."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        api_base: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[razorpay.Client] = None,
    ):
        if not key_id or not key_secret:
            raise ConfigurationError("Razorpay key id and key secret are required")
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self.timeout = timeout
        if client is None:
            options = {"base_url": api_base.rstrip("/")} if api_base else {}
            client = razorpay.Client(auth=(key_id, key_secret), **options)
        self.client = client

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a remote order.

        No retry happens here: the receipt is the idempotency key and the
        caller decides whether to try again.
        """
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        try:
            data = self.client.order.create(data=payload, timeout=self.timeout)
        except BadRequestError as e:
            logger.error(f"Razorpay rejected order for receipt {receipt}: {e}")
            raise GatewayUnavailable(
                "Payment gateway rejected the order, please retry later"
            )
        except (GatewayError, ServerError, requests.RequestException) as e:
            logger.error(f"Razorpay order creation failed for receipt {receipt}: {e}")
            raise GatewayUnavailable()

        logger.info(f"Razorpay order {data.get('id')} created for receipt {receipt}")
        return GatewayOrder(
            order_id=data["id"],
            amount_minor=int(data.get("amount", payload["amount"])),
            currency=data.get("currency", payload["currency"]),
            receipt=data.get("receipt", payload["receipt"]),
            status=data.get("status", "created"),
            raw=data,
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        try:
            return bool(
                self.client.utility.verify_payment_signature(
                    {
                        "razorpay_order_id": order_id,
                        "razorpay_payment_id": payment_id,
                        "razorpay_signature": signature,
                    }
                )
            )
        except SignatureVerificationError:
            return False

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> bool:
        return verify_webhook_signature(body, signature, self._webhook_secret)


def build_payment_gateway(config: Settings) -> RazorpayGateway:
    if not config.gateway_configured:
        raise ConfigurationError(
            "Payment gateway not configured: set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET"
        )
    if not config.razorpay_webhook_secret:
        logger.warning("RAZORPAY_WEBHOOK_SECRET is empty; webhooks will be rejected")
    return RazorpayGateway(
        key_id=config.razorpay_key_id,
        key_secret=config.razorpay_key_secret,
        webhook_secret=config.razorpay_webhook_secret,
        api_base=config.razorpay_api_base,
        timeout=config.payment_gateway_timeout_seconds,
    )
