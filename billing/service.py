import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import (
    InvalidStateTransition,
    OrderNotFound,
    ProfileNotFound,
    StoreWriteFailure,
    UnknownPackage,
)
from .models import (
    CreateOrderRequest,
    CreditOrder,
    CreditPackage,
    EventCategory,
    OrderResponse,
    OrderStatus,
    PaymentEvent,
    ReconciliationAction,
    ReconciliationResult,
    RejectOrderRequest,
    ResolutionMethod,
    UserProfile,
    ValidateOrderRequest,
)
from .resolver import DEFAULT_FALLBACK_WINDOW, OrderResolver
from .storage import InMemoryStorage

log = logging.getLogger("billing.reconciliation")

PACKAGES: dict[str, CreditPackage] = {
    "basic": CreditPackage(id="basic", credits=2, price=1000),
    "standard": CreditPackage(id="standard", credits=5, price=2000, popular=True),
    "premium": CreditPackage(id="premium", credits=20, price=5000),
}

DEFAULT_REJECT_NOTE = "Payment not confirmed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationService:
    def __init__(
        self,
        storage=None,
        resolver: Optional[OrderResolver] = None,
        fallback_window=DEFAULT_FALLBACK_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.clock = clock
        self.resolver = resolver or OrderResolver(self.storage, fallback_window=fallback_window, clock=clock)

    # webhook reconciliation

    def handle_event(self, event: PaymentEvent) -> ReconciliationResult:
        if event.category == EventCategory.SUCCESS:
            return self._handle_success(event)
        if event.category == EventCategory.CANCEL:
            return self._handle_cancel(event)

        log.info("Event not a success or cancel event, ignoring: %s", event.event_name)
        return ReconciliationResult(action=ReconciliationAction.IGNORED, transaction_id=event.transaction_id)

    def _handle_success(self, event: PaymentEvent) -> ReconciliationResult:
        resolution = self.resolver.resolve(event)
        if resolution is None:
            log.error("No matching order found for transaction: %s", event.log_context())
            raise OrderNotFound("Order not found", details={
                "order_id": event.order_reference,
                "amount": event.amount,
                "customer_email": event.customer_email,
            })

        order = resolution.order
        context = {**event.log_context(), "resolved_order_id": str(order.id), "method": resolution.method.value}

        if resolution.method == ResolutionMethod.SETTLED:
            log.info("Order already processed, acknowledging duplicate: %s", context)
            return self._already_processed(order, resolution.method, event)

        fields = {
            "validated_at": self.clock(),
            "notes": f"Auto-validated via FedaPay. TX: {event.transaction_id}, Status: {event.status}",
        }
        validated, profile = self._grant_credits(order, fields)
        if validated is None:
            log.info("Order claimed by a concurrent delivery: %s", context)
            return self._already_processed(order, resolution.method, event)

        log.info("Credits added automatically: %s", {
            **context,
            "credits": validated.credits,
            "balance_after": profile.credits,
        })
        return ReconciliationResult(
            action=ReconciliationAction.CREDITED,
            order=validated,
            applied=True,
            method=resolution.method,
            transaction_id=event.transaction_id,
            credits_added=validated.credits,
            balance_after=profile.credits,
        )

    def _handle_cancel(self, event: PaymentEvent) -> ReconciliationResult:
        log.info("Transaction canceled/declined: %s", event.event_name)
        resolution = self.resolver.resolve(event)

        if resolution is None or resolution.method == ResolutionMethod.SETTLED:
            log.info("No pending order found to mark as rejected: %s", event.log_context())
            return ReconciliationResult(
                action=ReconciliationAction.ORDER_CANCELED,
                order=resolution.order if resolution else None,
                method=resolution.method if resolution else None,
                transaction_id=event.transaction_id,
            )

        order = resolution.order
        reason = event.error_code or event.event_name
        rejected = self.storage.transition_order(
            order.id,
            OrderStatus.PENDING,
            OrderStatus.REJECTED,
            {"notes": f"Cancelled automatically: {reason}. Transaction ID: {event.transaction_id or 'N/A'}"},
        )
        context = {**event.log_context(), "resolved_order_id": str(order.id), "method": resolution.method.value}
        if rejected is None:
            log.info("Order left its pending state before cancel applied: %s", context)
        else:
            log.info("Order marked as rejected: %s", context)

        return ReconciliationResult(
            action=ReconciliationAction.ORDER_CANCELED,
            order=rejected or order,
            method=resolution.method,
            transaction_id=event.transaction_id,
            applied=rejected is not None,
        )

    def _already_processed(self, order: CreditOrder, method, event: PaymentEvent) -> ReconciliationResult:
        current = self.storage.get_order(order.id) or order
        return ReconciliationResult(
            action=ReconciliationAction.ALREADY_PROCESSED,
            order=current,
            method=method,
            transaction_id=event.transaction_id,
        )

    def _grant_credits(
        self, order: CreditOrder, fields: dict
    ) -> tuple[Optional[CreditOrder], Optional[UserProfile]]:
        """Validate ``order`` and add its credits to the owner's balance.

        The pending -> validated swap runs first; only its winner touches the
        ledger, so concurrent deliveries add credits at most once. A failed
        ledger write puts the order back to pending so the provider's
        redelivery can try again. Returns ``(None, None)`` when another caller
        already moved the order out of pending.
        """
        if self.storage.get_profile(order.user_id) is None:
            log.error("Profile not found for user %s (order %s)", order.user_id, order.id)
            raise ProfileNotFound(f"Profile {order.user_id} not found")

        validated = self.storage.transition_order(order.id, OrderStatus.PENDING, OrderStatus.VALIDATED, fields)
        if validated is None:
            return None, None

        try:
            profile = self.storage.get_profile(order.user_id)
            if profile is None:
                raise ProfileNotFound(f"Profile {order.user_id} not found")
            log.info("Credits update: %s", {
                "current": profile.credits,
                "adding": validated.credits,
                "new_total": profile.credits + validated.credits,
            })
            updated = self.storage.set_credits(order.user_id, profile.credits + validated.credits)
        except ProfileNotFound:
            self._release(order)
            raise
        except StoreWriteFailure as e:
            log.error("Failed to update credits for order %s: %s", order.id, e)
            self._release(order)
            raise StoreWriteFailure(f"Failed to update credits: {e}") from e
        except Exception as e:
            log.exception("Unexpected ledger error for order %s", order.id)
            self._release(order)
            raise StoreWriteFailure(f"Failed to update credits: {e}") from e

        return validated, updated

    def _release(self, order: CreditOrder) -> None:
        restored = {"validated_at": order.validated_at, "validated_by": order.validated_by, "notes": order.notes}
        try:
            released = self.storage.transition_order(order.id, OrderStatus.VALIDATED, OrderStatus.PENDING, restored)
        except Exception as e:
            log.critical("Order %s validated without credits, release failed: %s", order.id, e)
            return
        if released is None:
            log.critical("Order %s validated without credits, release found no row", order.id)
        else:
            log.warning("Order %s returned to pending after ledger failure", order.id)

    # purchase flow and admin actions

    def list_packages(self) -> list[CreditPackage]:
        return list(PACKAGES.values())

    def create_order(self, request: CreateOrderRequest) -> CreditOrder:
        package = PACKAGES.get(request.package_id)
        if package is None:
            raise UnknownPackage(f"Unknown credit package {request.package_id!r}")

        order = CreditOrder(
            id=uuid4(),
            user_id=request.user_id,
            user_email=request.user_email,
            credits=package.credits,
            amount=package.price,
            payment_method=request.payment_method,
            status=OrderStatus.PENDING,
            created_at=self.clock(),
        )
        created = self.storage.insert_order(order)
        log.info("Order created: %s", {
            "order_id": str(created.id),
            "user_id": str(created.user_id),
            "package": package.id,
            "amount": created.amount,
        })
        return created

    def validate_order(self, order_id: UUID, request: ValidateOrderRequest) -> OrderResponse:
        order = self.get_order(order_id)
        if not order.is_pending():
            raise InvalidStateTransition(f"Cannot validate order in {order.status.value} state")

        validated, profile = self._grant_credits(order, {
            "validated_at": self.clock(),
            "validated_by": request.performed_by,
        })
        if validated is None:
            current = self.get_order(order_id)
            raise InvalidStateTransition(f"Cannot validate order in {current.status.value} state")

        log.info("Order validated manually: %s", {
            "order_id": str(order_id),
            "performed_by": request.performed_by,
            "credits": validated.credits,
        })
        return OrderResponse(
            order=validated,
            balance=profile,
            message=f"{validated.credits} credits added to {validated.user_email}",
        )

    def reject_order(self, order_id: UUID, request: RejectOrderRequest) -> OrderResponse:
        order = self.get_order(order_id)
        if not order.is_pending():
            raise InvalidStateTransition(f"Cannot reject order in {order.status.value} state")

        rejected = self.storage.transition_order(order_id, OrderStatus.PENDING, OrderStatus.REJECTED, {
            "validated_at": self.clock(),
            "validated_by": request.performed_by,
            "notes": request.notes or DEFAULT_REJECT_NOTE,
        })
        if rejected is None:
            current = self.get_order(order_id)
            raise InvalidStateTransition(f"Cannot reject order in {current.status.value} state")

        log.info("Order rejected manually: %s", {"order_id": str(order_id), "performed_by": request.performed_by})
        return OrderResponse(order=rejected, message="Order rejected")

    def get_order(self, order_id: UUID) -> CreditOrder:
        order = self.storage.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def list_orders(self, status: Optional[OrderStatus] = None) -> list[CreditOrder]:
        return self.storage.list_orders(status)

    def get_balance(self, user_id: UUID) -> UserProfile:
        profile = self.storage.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {user_id} not found")
        return profile
