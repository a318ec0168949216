from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from .errors import ProfileNotFound, StoreWriteFailure
from .models import CreditOrder, OrderStatus, UserProfile

ORDERS_TABLE = "credit_orders"
PROFILES_TABLE = "profiles"

# PostgREST rejections and transport failures (timeouts, refused connections)
STORE_ERRORS = (APIError, httpx.HTTPError)


def get_supabase(url: Optional[str], service_key: Optional[str]) -> Client:
    if not (url and service_key):
        raise RuntimeError("Supabase client not configured (missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY).")
    return create_client(url, service_key)


def _serialize(values: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in values.items():
        if isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, UUID):
            out[k] = str(v)
        elif isinstance(v, OrderStatus):
            out[k] = v.value
        else:
            out[k] = v
    return out


def _reason(e: Exception) -> str:
    return getattr(e, "message", None) or str(e)


class SupabaseStorage:
    """Order and ledger store backed by the Supabase PostgREST API.

    ``transition_order`` issues ``UPDATE ... WHERE id = ? AND status = ?`` and
    reads the affected rows back, which gives the compare-and-swap the
    reconciliation engine relies on. Any PostgREST or transport error surfaces
    as ``StoreWriteFailure``.
    """

    def __init__(self, client: Client):
        self.sb = client

    def insert_order(self, order: CreditOrder) -> CreditOrder:
        try:
            res = self.sb.table(ORDERS_TABLE).insert(_serialize(order.model_dump())).execute()
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to insert order {order.id}: {_reason(e)}") from e
        return CreditOrder(**res.data[0]) if res.data else order

    def get_order(self, order_id: UUID, status: Optional[OrderStatus] = None) -> Optional[CreditOrder]:
        q = self.sb.table(ORDERS_TABLE).select("*").eq("id", str(order_id))
        if status is not None:
            q = q.eq("status", status.value)
        try:
            res = q.limit(1).execute()
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to read order {order_id}: {_reason(e)}") from e
        return CreditOrder(**res.data[0]) if res.data else None

    def find_recent_pending(
        self, amount: int, since: datetime, email: Optional[str] = None
    ) -> Optional[CreditOrder]:
        q = (
            self.sb.table(ORDERS_TABLE)
            .select("*")
            .eq("status", OrderStatus.PENDING.value)
            .eq("amount", amount)
            .gte("created_at", since.isoformat())
        )
        if email:
            q = q.eq("user_email", email)
        try:
            res = q.order("created_at", desc=True).limit(1).execute()
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to search pending orders: {_reason(e)}") from e
        return CreditOrder(**res.data[0]) if res.data else None

    def list_orders(self, status: Optional[OrderStatus] = None) -> list[CreditOrder]:
        q = self.sb.table(ORDERS_TABLE).select("*")
        if status is not None:
            q = q.eq("status", status.value)
        try:
            res = q.order("created_at", desc=True).execute()
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to list orders: {_reason(e)}") from e
        return [CreditOrder(**row) for row in (res.data or [])]

    def transition_order(
        self,
        order_id: UUID,
        expected: OrderStatus,
        new: OrderStatus,
        fields: Optional[dict] = None,
    ) -> Optional[CreditOrder]:
        payload = _serialize({**(fields or {}), "status": new})
        try:
            res = (
                self.sb.table(ORDERS_TABLE)
                .update(payload)
                .eq("id", str(order_id))
                .eq("status", expected.value)
                .execute()
            )
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to update order {order_id}: {_reason(e)}") from e
        return CreditOrder(**res.data[0]) if res.data else None

    def get_profile(self, user_id: UUID) -> Optional[UserProfile]:
        try:
            res = (
                self.sb.table(PROFILES_TABLE)
                .select("user_id,credits")
                .eq("user_id", str(user_id))
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to read profile {user_id}: {_reason(e)}") from e
        if not res.data:
            return None
        row = res.data[0]
        return UserProfile(user_id=row["user_id"], credits=row.get("credits") or 0)

    def set_credits(self, user_id: UUID, credits: int) -> UserProfile:
        try:
            res = (
                self.sb.table(PROFILES_TABLE)
                .update({"credits": credits})
                .eq("user_id", str(user_id))
                .execute()
            )
        except STORE_ERRORS as e:
            raise StoreWriteFailure(f"Failed to update credits for {user_id}: {_reason(e)}") from e
        if not res.data:
            raise ProfileNotFound(f"Profile {user_id} not found")
        return UserProfile(**res.data[0])
