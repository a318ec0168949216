"""
Unit Tests for the Webhook Verifier

Tests cover:
1. Envelope parsing (both nesting conventions, unknown shape)
2. Event classification
3. Order reference fallback chain
4. Signature verification and enforcement
"""

import hashlib
import hmac
import json

import pytest

from billing.errors import InvalidSignature, MalformedPayload
from billing.models import EnvelopeShape, EventCategory
from billing.verifier import (
    WebhookVerifier,
    classify,
    extract_order_reference,
    parse_event,
    verify_signature,
)

SECRET = "wh_test_secret"


def body(payload) -> bytes:
    return json.dumps(payload).encode()


def sign(raw: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


class TestEnvelopeParsing:
    """Tests for turning raw bodies into payment events."""

    def test_entity_envelope(self):
        event = parse_event(body({
            "name": "transaction.approved",
            "entity": {
                "id": 4521,
                "amount": 2000,
                "status": "approved",
                "customer": {"email": "buyer@example.com"},
                "custom_metadata": {"order_id": "abc"},
            },
        }))

        assert event.category == EventCategory.SUCCESS
        assert event.shape == EnvelopeShape.ENTITY
        assert event.transaction_id == "4521"
        assert event.amount == 2000
        assert event.status == "approved"
        assert event.customer_email == "buyer@example.com"
        assert event.order_reference == "abc"

    def test_data_object_envelope(self):
        event = parse_event(body({
            "type": "transaction.declined",
            "data": {"object": {"id": "tx-9", "amount": "1000", "last_error_code": "insufficient_funds"}},
        }))

        assert event.category == EventCategory.CANCEL
        assert event.shape == EnvelopeShape.DATA_OBJECT
        assert event.amount == 1000
        assert event.error_code == "insufficient_funds"

    def test_name_wins_over_type(self):
        event = parse_event(body({"name": "transaction.approved", "type": "transaction.declined", "entity": {}}))
        assert event.category == EventCategory.SUCCESS

    def test_unknown_shape_is_not_an_error(self):
        event = parse_event(body({"name": "transaction.approved", "payload": [1, 2, 3]}))

        assert event.shape == EnvelopeShape.UNKNOWN
        assert event.transaction_id is None
        assert event.amount is None
        assert event.order_reference is None

    def test_non_numeric_amount_is_dropped(self):
        event = parse_event(body({"name": "transaction.approved", "entity": {"amount": "lots"}}))
        assert event.amount is None

    @pytest.mark.parametrize("amount", ["2000.75", 2000.75, "0.5"])
    def test_fractional_amount_is_dropped(self, amount):
        """Fractions are not truncated into a matching whole amount."""
        event = parse_event(body({"name": "transaction.approved", "entity": {"amount": amount}}))
        assert event.amount is None

    @pytest.mark.parametrize("amount", ["2000.0", 2000.0, " 2000 ", "2000.000"])
    def test_integral_decimal_amount_is_kept(self, amount):
        event = parse_event(body({"name": "transaction.approved", "entity": {"amount": amount}}))
        assert event.amount == 2000

    @pytest.mark.parametrize("amount", [
        "1e200000",
        "1E3",
        "2e3",
        1e300,
        "9" * 33,
        10 ** 40,
        "Infinity",
        "NaN",
    ])
    def test_oversized_or_exponent_amount_is_dropped(self, amount):
        event = parse_event(body({"name": "transaction.approved", "entity": {"amount": amount}}))
        assert event.amount is None

    @pytest.mark.parametrize("raw", [b"{not json", b"\xff\xfe\x00", b"[1, 2]", b'"text"', b""])
    def test_malformed_bodies(self, raw):
        with pytest.raises(MalformedPayload):
            parse_event(raw)


class TestClassification:
    """Tests for event-name classification."""

    @pytest.mark.parametrize("name", ["transaction.approved", "transaction.completed", "Transaction.Successful"])
    def test_success_names(self, name):
        assert classify(name) == EventCategory.SUCCESS

    @pytest.mark.parametrize("name", [
        "transaction.canceled", "transaction.cancelled", "transaction.declined", "transaction.refunded",
    ])
    def test_cancel_names(self, name):
        assert classify(name) == EventCategory.CANCEL

    @pytest.mark.parametrize("name", ["transaction.created", "customer.updated", "", None])
    def test_everything_else_is_ignored(self, name):
        assert classify(name) == EventCategory.IGNORED


class TestOrderReference:
    """Tests for the order reference fallback chain."""

    @pytest.mark.parametrize("key", ["order_id", "orderId", "orderID"])
    def test_metadata_key_spellings(self, key):
        assert extract_order_reference({"custom_metadata": {key: "o-1"}}) == "o-1"

    def test_metadata_wins_over_legacy_and_reference(self):
        tx = {"custom_metadata": {"order_id": "meta"}, "custom_id": "legacy", "reference": "ref"}
        assert extract_order_reference(tx) == "meta"

    def test_legacy_field_wins_over_reference(self):
        tx = {"custom_metadata": {"other": "x"}, "custom_id": "legacy", "reference": "ref"}
        assert extract_order_reference(tx) == "legacy"

    def test_reference_field_last(self):
        assert extract_order_reference({"custom_id": "", "reference": "ref"}) == "ref"

    def test_absent_reference(self):
        assert extract_order_reference({"amount": 1000}) is None
        assert extract_order_reference(None) is None


class TestSignature:
    """Tests for HMAC verification and enforcement."""

    def test_valid_signature(self):
        raw = body({"name": "transaction.approved"})
        assert verify_signature(raw, sign(raw), SECRET)

    def test_tampered_body_fails(self):
        raw = body({"name": "transaction.approved"})
        assert not verify_signature(raw + b" ", sign(raw), SECRET)

    def test_missing_secret_or_signature_fails(self):
        raw = body({})
        assert not verify_signature(raw, sign(raw), "")
        assert not verify_signature(raw, None, SECRET)

    def test_unverified_mode_accepts_bad_signature(self):
        verifier = WebhookVerifier(SECRET, enforce_signature=False)
        event = verifier.verify(body({"name": "transaction.approved", "entity": {}}), "bogus")
        assert event.category == EventCategory.SUCCESS

    def test_enforced_mode_rejects_bad_signature(self):
        verifier = WebhookVerifier(SECRET, enforce_signature=True)
        with pytest.raises(InvalidSignature):
            verifier.verify(body({"name": "transaction.approved"}), "bogus")

    def test_enforced_mode_accepts_good_signature(self):
        verifier = WebhookVerifier(SECRET, enforce_signature=True)
        raw = body({"name": "transaction.approved", "entity": {"id": 1}})
        assert verifier.verify(raw, sign(raw)).transaction_id == "1"

    def test_enforced_mode_without_secret_rejects(self):
        verifier = WebhookVerifier("", enforce_signature=True)
        raw = body({"name": "transaction.approved"})
        with pytest.raises(InvalidSignature):
            verifier.verify(raw, sign(raw))
