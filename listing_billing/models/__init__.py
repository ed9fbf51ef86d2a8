"""SQLAlchemy models for the billing service."""

from .base import Base
from .business import Business
from .subscription import SubscriptionRecord
from .payment_history import PaymentHistoryEntry
from .discount_code import DiscountCode

__all__ = [
    "Base",
    "Business",
    "SubscriptionRecord",
    "PaymentHistoryEntry",
    "DiscountCode",
]
