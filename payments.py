"""Payment authority collaborator.

The authority hands out order handles for an amount and later proves a
payment either through the checkout callback (the customer's browser posts
``payment_id`` and ``signature`` back to us) or through a signed webhook.
Signatures follow the Razorpay convention: hex HMAC-SHA256, over
``"{order_id}|{payment_id}"`` with the key secret for checkout, and over the
raw request body with the webhook secret for webhooks.
"""

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from config import settings
from errors import ValidationFailed

logger = logging.getLogger(__name__)

CAPTURED_EVENT = "payment.captured"
FAILED_EVENT = "payment.failed"


@dataclass(frozen=True)
class OrderHandle:
    order_id: str
    amount_minor: int
    currency: str
    receipt: str


@dataclass(frozen=True)
class CheckoutProof:
    payment_id: str
    signature: str
    method = "checkout"


@dataclass(frozen=True)
class WebhookProof:
    payment_id: str
    body: bytes
    signature: str
    method = "webhook"


PaymentProof = Union[CheckoutProof, WebhookProof]


@dataclass(frozen=True)
class WebhookEvent:
    event: str
    order_id: str
    payment_id: Optional[str]
    error_description: Optional[str] = None


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaymentAuthority:
    """HMAC-signed order/verify contract of the external gateway."""

    def __init__(
        self,
        key_id: str = settings.PAYMENT_KEY_ID,
        key_secret: str = settings.PAYMENT_KEY_SECRET,
        webhook_secret: str = settings.PAYMENT_WEBHOOK_SECRET,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    def create_order(self, amount: float, currency: str, receipt: str) -> OrderHandle:
        order = OrderHandle(
            order_id=f"order_{secrets.token_hex(7)}",
            amount_minor=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
        )
        logger.info("Created payment order %s for %s %s", order.order_id, amount, currency)
        return order

    def checkout_signature(self, order_id: str, payment_id: str) -> str:
        return _hmac_hex(self._key_secret, f"{order_id}|{payment_id}".encode("utf-8"))

    def webhook_signature(self, body: bytes) -> str:
        return _hmac_hex(self._webhook_secret, body)

    def verify(self, order_id: str, proof: PaymentProof) -> bool:
        if not proof.signature or not proof.payment_id:
            return False
        if isinstance(proof, CheckoutProof):
            expected = self.checkout_signature(order_id, proof.payment_id)
            return hmac.compare_digest(expected, proof.signature)
        if isinstance(proof, WebhookProof):
            if not hmac.compare_digest(self.webhook_signature(proof.body), proof.signature):
                return False
            # A correctly signed body must still be about this order.
            event = parse_webhook(proof.body)
            return event.order_id == order_id and event.payment_id == proof.payment_id
        raise TypeError(f"Unsupported payment proof {type(proof).__name__}")


def parse_webhook(body: bytes) -> WebhookEvent:
    try:
        event = json.loads(body)
        entity = event["payload"]["payment"]["entity"]
        return WebhookEvent(
            event=event["event"],
            order_id=entity["order_id"],
            payment_id=entity.get("id"),
            error_description=entity.get("error_description"),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise ValidationFailed(f"Malformed payment webhook: {exc}") from exc
