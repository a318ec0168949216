from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"


class EventCategory(str, Enum):
    SUCCESS = "success"
    CANCEL = "cancel"
    IGNORED = "ignored"


class EnvelopeShape(str, Enum):
    ENTITY = "entity"
    DATA_OBJECT = "data.object"
    UNKNOWN = "unknown"


class ResolutionMethod(str, Enum):
    REFERENCE = "reference"
    FALLBACK = "fallback"
    SETTLED = "settled"


class ReconciliationAction(str, Enum):
    CREDITED = "credited"
    ALREADY_PROCESSED = "already_processed"
    ORDER_CANCELED = "order_canceled"
    IGNORED = "ignored"


class CreditPackage(BaseModel):
    id: str
    credits: int = Field(..., gt=0)
    price: int = Field(..., gt=0)
    popular: bool = False


class CreditOrder(BaseModel):
    id: UUID
    user_id: UUID
    user_email: str
    credits: int
    amount: int
    payment_method: str = "fedapay"
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    validated_at: Optional[datetime] = None
    validated_by: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING


class UserProfile(BaseModel):
    user_id: UUID
    credits: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class PaymentEvent(BaseModel):
    category: EventCategory
    event_name: Optional[str] = None
    shape: EnvelopeShape = EnvelopeShape.UNKNOWN
    transaction_id: Optional[str] = None
    amount: Optional[int] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    customer_email: Optional[str] = None
    order_reference: Optional[str] = None

    def log_context(self) -> dict:
        return {
            "event": self.event_name,
            "transaction_id": self.transaction_id,
            "order_reference": self.order_reference,
            "amount": self.amount,
            "customer_email": self.customer_email,
        }


class Resolution(BaseModel):
    order: CreditOrder
    method: ResolutionMethod


class ReconciliationResult(BaseModel):
    action: ReconciliationAction
    order: Optional[CreditOrder] = None
    method: Optional[ResolutionMethod] = None
    transaction_id: Optional[str] = None
    applied: bool = False
    credits_added: int = 0
    balance_after: Optional[int] = None


class CreateOrderRequest(BaseModel):
    user_id: UUID
    user_email: str
    package_id: str = Field(..., description="Catalog package the order snapshots")
    payment_method: str = Field(default="fedapay")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "user_email": "buyer@example.com",
            "package_id": "standard",
            "payment_method": "fedapay"
        }
    })


class ValidateOrderRequest(BaseModel):
    performed_by: str = Field(..., description="Identity of the validating admin")


class RejectOrderRequest(BaseModel):
    performed_by: str = Field(..., description="Identity of the rejecting admin")
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    order: CreditOrder
    balance: Optional[UserProfile] = None
    message: str
