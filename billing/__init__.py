"""
Credit Purchase Reconciliation

This module provides:
- Credit orders snapshotted from a fixed package catalog
- FedaPay webhook parsing with optional HMAC signature enforcement
- Order resolution by explicit reference, with an amount/email/recency fallback
- Exactly-once credit grants guarded by a pending -> validated swap
- Manual admin validation and rejection
"""

from .models import (
    OrderStatus,
    EventCategory,
    CreditOrder,
    CreditPackage,
    PaymentEvent,
    UserProfile,
)
from .resolver import OrderResolver
from .service import ReconciliationService
from .verifier import WebhookVerifier

__all__ = [
    "OrderStatus",
    "EventCategory",
    "CreditOrder",
    "CreditPackage",
    "PaymentEvent",
    "UserProfile",
    "OrderResolver",
    "ReconciliationService",
    "WebhookVerifier",
]
