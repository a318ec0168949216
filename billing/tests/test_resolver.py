"""
Unit Tests for the Order Resolver

Tests cover:
1. Primary resolution by explicit reference
2. Settled references (no fallback)
3. Fallback matching window, amount and email filters
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from billing.models import (
    CreditOrder,
    EventCategory,
    OrderStatus,
    PaymentEvent,
    ResolutionMethod,
)
from billing.resolver import OrderResolver
from billing.storage import InMemoryStorage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
EMAIL = "buyer@example.com"


def make_order(storage, *, amount=2000, credits=5, email=EMAIL, age=timedelta(minutes=5),
               status=OrderStatus.PENDING) -> CreditOrder:
    return storage.insert_order(CreditOrder(
        id=uuid4(),
        user_id=USER_ID,
        user_email=email,
        credits=credits,
        amount=amount,
        status=status,
        created_at=NOW - age,
    ))


def success_event(**kwargs) -> PaymentEvent:
    return PaymentEvent(category=EventCategory.SUCCESS, event_name="transaction.approved", **kwargs)


def make_resolver(storage, window=timedelta(minutes=30)) -> OrderResolver:
    return OrderResolver(storage, fallback_window=window, clock=lambda: NOW)


class TestPrimaryResolution:
    """Tests for reference lookups."""

    def test_reference_finds_pending_order(self):
        storage = InMemoryStorage()
        order = make_order(storage)

        resolution = make_resolver(storage).resolve(success_event(order_reference=str(order.id)))

        assert resolution.order.id == order.id
        assert resolution.method == ResolutionMethod.REFERENCE

    def test_reference_wins_over_fallback(self):
        """An older referenced order beats a newer order the fallback would pick."""
        storage = InMemoryStorage()
        referenced = make_order(storage, age=timedelta(minutes=20))
        make_order(storage, age=timedelta(minutes=1))

        resolution = make_resolver(storage).resolve(
            success_event(order_reference=str(referenced.id), amount=2000, customer_email=EMAIL)
        )

        assert resolution.order.id == referenced.id
        assert resolution.method == ResolutionMethod.REFERENCE

    def test_settled_reference_skips_fallback(self):
        storage = InMemoryStorage()
        settled = make_order(storage, status=OrderStatus.VALIDATED)
        make_order(storage)

        resolution = make_resolver(storage).resolve(
            success_event(order_reference=str(settled.id), amount=2000, customer_email=EMAIL)
        )

        assert resolution.order.id == settled.id
        assert resolution.method == ResolutionMethod.SETTLED

    def test_unknown_reference_falls_back(self):
        storage = InMemoryStorage()
        order = make_order(storage)

        resolution = make_resolver(storage).resolve(
            success_event(order_reference=str(uuid4()), amount=2000)
        )

        assert resolution.order.id == order.id
        assert resolution.method == ResolutionMethod.FALLBACK

    def test_non_uuid_reference_falls_back(self):
        storage = InMemoryStorage()
        order = make_order(storage)

        resolution = make_resolver(storage).resolve(success_event(order_reference="INV-2026-001", amount=2000))

        assert resolution.order.id == order.id
        assert resolution.method == ResolutionMethod.FALLBACK


class TestFallbackMatching:
    """Tests for amount/email/recency matching."""

    def test_picks_most_recent_match(self):
        storage = InMemoryStorage()
        make_order(storage, age=timedelta(minutes=15))
        newest = make_order(storage, age=timedelta(minutes=2))

        resolution = make_resolver(storage).resolve(success_event(amount=2000))

        assert resolution.order.id == newest.id

    def test_never_selects_outside_window(self):
        storage = InMemoryStorage()
        make_order(storage, age=timedelta(minutes=31))

        assert make_resolver(storage).resolve(success_event(amount=2000)) is None

    def test_narrower_window(self):
        storage = InMemoryStorage()
        make_order(storage, age=timedelta(minutes=10))

        assert make_resolver(storage, window=timedelta(minutes=5)).resolve(success_event(amount=2000)) is None

    def test_never_selects_mismatched_amount(self):
        storage = InMemoryStorage()
        make_order(storage, amount=5000)

        assert make_resolver(storage).resolve(success_event(amount=2000)) is None

    def test_email_constrains_match(self):
        storage = InMemoryStorage()
        mine = make_order(storage, age=timedelta(minutes=10))
        make_order(storage, email="someone@else.com", age=timedelta(minutes=1))

        resolution = make_resolver(storage).resolve(success_event(amount=2000, customer_email=EMAIL))

        assert resolution.order.id == mine.id

    def test_email_mismatch_yields_nothing(self):
        storage = InMemoryStorage()
        make_order(storage)

        assert make_resolver(storage).resolve(success_event(amount=2000, customer_email="x@y.z")) is None

    def test_ignores_non_pending_orders(self):
        storage = InMemoryStorage()
        make_order(storage, status=OrderStatus.REJECTED)

        assert make_resolver(storage).resolve(success_event(amount=2000)) is None

    def test_no_reference_and_no_amount(self):
        storage = InMemoryStorage()
        make_order(storage)

        assert make_resolver(storage).resolve(success_event()) is None
