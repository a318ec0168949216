import threading
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from .errors import ProfileNotFound
from .models import CreditOrder, OrderStatus, UserProfile

DEMO_USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_USER_EMAIL = "demo@example.com"


class InMemoryStorage:
    """Order and ledger store kept in process memory.

    Each public method holds the store lock for its whole body, so a single
    call behaves like one database statement. Callers get no multi-call
    transactions; the conditional ``transition_order`` is the only
    compare-and-swap primitive.
    """

    def __init__(self, seed: bool = True):
        self.orders: dict[UUID, dict] = {}
        self.profiles: dict[UUID, dict] = {}
        self._lock = threading.Lock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.profiles[DEMO_USER_ID] = {
            "user_id": DEMO_USER_ID,
            "email": DEMO_USER_EMAIL,
            "credits": 0,
        }

    # orders

    def insert_order(self, order: CreditOrder) -> CreditOrder:
        with self._lock:
            self.orders[order.id] = order.model_dump()
            return CreditOrder(**self.orders[order.id])

    def get_order(self, order_id: UUID, status: Optional[OrderStatus] = None) -> Optional[CreditOrder]:
        with self._lock:
            row = self.orders.get(order_id)
            if row is None:
                return None
            if status is not None and row["status"] != status:
                return None
            return CreditOrder(**row)

    def find_recent_pending(
        self, amount: int, since: datetime, email: Optional[str] = None
    ) -> Optional[CreditOrder]:
        with self._lock:
            candidates = [
                row for row in self.orders.values()
                if row["status"] == OrderStatus.PENDING
                and row["amount"] == amount
                and row["created_at"] >= since
                and (email is None or row["user_email"] == email)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda r: r["created_at"])
            return CreditOrder(**newest)

    def list_orders(self, status: Optional[OrderStatus] = None) -> list[CreditOrder]:
        with self._lock:
            rows = [
                CreditOrder(**row) for row in self.orders.values()
                if status is None or row["status"] == status
            ]
        rows.sort(key=lambda o: o.created_at, reverse=True)
        return rows

    def transition_order(
        self,
        order_id: UUID,
        expected: OrderStatus,
        new: OrderStatus,
        fields: Optional[dict] = None,
    ) -> Optional[CreditOrder]:
        with self._lock:
            row = self.orders.get(order_id)
            if row is None or row["status"] != expected:
                return None
            row.update(fields or {})
            row["status"] = new
            return CreditOrder(**row)

    # ledger

    def create_profile(self, user_id: UUID, email: str = "", credits: int = 0) -> UserProfile:
        with self._lock:
            self.profiles[user_id] = {"user_id": user_id, "email": email, "credits": credits}
            return UserProfile(**self.profiles[user_id])

    def get_profile(self, user_id: UUID) -> Optional[UserProfile]:
        with self._lock:
            row = self.profiles.get(user_id)
            return UserProfile(**row) if row else None

    def set_credits(self, user_id: UUID, credits: int) -> UserProfile:
        with self._lock:
            row = self.profiles.get(user_id)
            if row is None:
                raise ProfileNotFound(f"Profile {user_id} not found")
            row["credits"] = credits
            row["updated_at"] = datetime.now(timezone.utc)
            return UserProfile(**row)
