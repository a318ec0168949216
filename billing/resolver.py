import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from .models import CreditOrder, PaymentEvent, Resolution, ResolutionMethod

log = logging.getLogger("billing.resolver")

DEFAULT_FALLBACK_WINDOW = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(reference: str) -> Optional[UUID]:
    try:
        return UUID(reference)
    except ValueError:
        return None


class OrderResolver:
    """Maps a payment event to at most one credit order.

    A reference extracted from the event is authoritative. When it is missing
    or names no order, the fallback picks the newest pending order with the
    same amount (and customer email, when the event has one) created inside
    the fallback window. Two pending orders that agree on amount, email and
    window are indistinguishable here; the newest one wins.
    """

    def __init__(
        self,
        storage,
        fallback_window: timedelta = DEFAULT_FALLBACK_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.fallback_window = fallback_window
        self.clock = clock

    def resolve(self, event: PaymentEvent) -> Optional[Resolution]:
        if event.order_reference:
            order_id = _as_uuid(event.order_reference)
            if order_id is not None:
                order = self.storage.get_order(order_id)
                if order is not None and order.is_pending():
                    log.info("Found order by reference: %s", order.id)
                    return Resolution(order=order, method=ResolutionMethod.REFERENCE)
                if order is not None:
                    log.info("Referenced order already %s: %s", order.status.value, order.id)
                    return Resolution(order=order, method=ResolutionMethod.SETTLED)
            log.info("Order not found by reference %r, trying fallback", event.order_reference)

        if event.amount:
            order = self.find_by_matching(event.amount, event.customer_email)
            if order is not None:
                return Resolution(order=order, method=ResolutionMethod.FALLBACK)

        return None

    def find_by_matching(self, amount: int, customer_email: Optional[str]) -> Optional[CreditOrder]:
        since = self.clock() - self.fallback_window
        log.info("Attempting fallback order matching: %s", {
            "amount": amount,
            "customer_email": customer_email,
            "since": since.isoformat(),
        })
        order = self.storage.find_recent_pending(amount, since, email=customer_email or None)
        if order is None:
            log.info("No matching order found via fallback")
            return None
        log.info("Fallback found matching order: %s", order.id)
        return order
