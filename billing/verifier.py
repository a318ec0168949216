"""
FedaPay webhook parsing and signature checks.

The provider nests the transaction under ``entity`` or ``data.object`` and the
order reference may sit in any of several fields, so every lookup here is
defensive: a missing field yields ``None``, only an unparseable body is fatal.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import InvalidSignature, MalformedPayload
from .models import EnvelopeShape, EventCategory, PaymentEvent

log = logging.getLogger("billing.verifier")

SIGNATURE_HEADER = "x-fedapay-signature"

SUCCESS_EVENTS = frozenset({
    "transaction.approved",
    "transaction.completed",
    "transaction.successful",
})

CANCEL_EVENTS = frozenset({
    "transaction.canceled",
    "transaction.cancelled",
    "transaction.declined",
    "transaction.refunded",
})

METADATA_ORDER_KEYS = ("order_id", "orderId", "orderID")
MAX_AMOUNT_CHARS = 32


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret or not signature:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.strip().lower())


def classify(event_name: Optional[str]) -> EventCategory:
    name = (event_name or "").strip().lower()
    if name in SUCCESS_EVENTS:
        return EventCategory.SUCCESS
    if name in CANCEL_EVENTS:
        return EventCategory.CANCEL
    return EventCategory.IGNORED


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _amount(value: Any) -> Optional[int]:
    """Whole-unit amount, or ``None`` when the value is not a plain integer.

    FCFA has no minor unit, so fractional amounts are treated as absent rather
    than rounded. Exponent notation and overlong digit strings are refused
    before any decimal arithmetic runs.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        text = str(value).strip()
    except ValueError:
        # int too large to render
        return None
    if not text or len(text) > MAX_AMOUNT_CHARS or "e" in text.lower():
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount != amount.to_integral_value():
        return None
    return int(amount)


def extract_order_reference(transaction: Optional[dict]) -> Optional[str]:
    if not transaction:
        return None

    metadata = transaction.get("custom_metadata")
    if isinstance(metadata, dict):
        for key in METADATA_ORDER_KEYS:
            ref = _text(metadata.get(key))
            if ref:
                return ref

    # legacy single field
    ref = _text(transaction.get("custom_id"))
    if ref:
        return ref

    return _text(transaction.get("reference"))


def _unwrap(envelope: dict) -> tuple[Optional[dict], EnvelopeShape]:
    entity = envelope.get("entity")
    if isinstance(entity, dict):
        return entity, EnvelopeShape.ENTITY
    data = envelope.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"], EnvelopeShape.DATA_OBJECT
    return None, EnvelopeShape.UNKNOWN


def parse_event(raw_body: bytes) -> PaymentEvent:
    try:
        envelope = json.loads(raw_body.decode("utf-8"))
    except ValueError as e:
        raise MalformedPayload(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise MalformedPayload("Webhook body is not a JSON object")

    event_name = _text(envelope.get("name")) or _text(envelope.get("type"))
    transaction, shape = _unwrap(envelope)
    tx = transaction or {}
    customer = tx.get("customer") if isinstance(tx.get("customer"), dict) else {}

    return PaymentEvent(
        category=classify(event_name),
        event_name=event_name,
        shape=shape,
        transaction_id=_text(tx.get("id")),
        amount=_amount(tx.get("amount")),
        status=_text(tx.get("status")),
        error_code=_text(tx.get("last_error_code")),
        customer_email=_text(customer.get("email")),
        order_reference=extract_order_reference(transaction),
    )


class WebhookVerifier:
    def __init__(self, secret: str = "", enforce_signature: bool = False):
        self.secret = secret
        self.enforce_signature = enforce_signature

    def verify(self, raw_body: bytes, signature: Optional[str]) -> PaymentEvent:
        valid = verify_signature(raw_body, signature, self.secret)
        if not valid:
            if self.enforce_signature:
                log.warning("Rejected webhook: %s", {
                    "signature_present": bool(signature),
                    "secret_configured": bool(self.secret),
                })
                raise InvalidSignature("Invalid webhook signature")
            log.info("Unverified webhook accepted: %s", {
                "signature_present": bool(signature),
                "secret_configured": bool(self.secret),
            })

        event = parse_event(raw_body)
        log.info("Webhook event parsed: %s", {**event.log_context(), "shape": event.shape.value})
        return event
