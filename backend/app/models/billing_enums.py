"""
Billing enumerations.
"""

import enum


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enumeration."""
    PENDING = "PENDING"  # Checkout created, waiting for confirmation
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SubscriptionPaymentStatus(str, enum.Enum):
    PAID = "paid"
    UNPAID = "unpaid"


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CASH = "cash"


class PaymentStatus(str, enum.Enum):
    """Payment status enumeration."""
    CREATED = "created"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    UNPAID = "UNPAID"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
