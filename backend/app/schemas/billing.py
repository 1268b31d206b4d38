"""
Subscription billing schemas.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional
from backend.app.models.billing_enums import PaymentProvider, SubscriptionStatus, SubscriptionPaymentStatus


class CheckoutCreate(BaseModel):
    """Schema for opening a plan checkout."""
    plan_id: int
    provider: PaymentProvider = PaymentProvider.STRIPE
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def online_provider(cls, v: PaymentProvider) -> PaymentProvider:
        if v == PaymentProvider.CASH:
            raise ValueError("Checkout requires an online provider (stripe or paypal)")
        return v


class CheckoutResponse(BaseModel):
    provider: PaymentProvider
    id: str = Field(..., description="Provider handle (Stripe session id or PayPal order id)")
    url: str
    payment_id: int
    subscription_id: int


class ConfirmRequest(BaseModel):
    """Stripe returns `session_id`, PayPal returns `order_id`; one is required."""
    session_id: Optional[str] = None
    order_id: Optional[str] = None

    @model_validator(mode="after")
    def one_handle(self):
        if not (self.session_id or self.order_id):
            raise ValueError("session_id or order_id is required")
        return self

    @property
    def handle(self) -> str:
        return self.session_id or self.order_id


class ActivationResponse(BaseModel):
    subscription_id: int
    payment_id: int
    invoice_id: int
    renewed: bool
    replayed: bool
    status: SubscriptionStatus
    end_date: datetime


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class SubscriptionResponse(BaseModel):
    """Schema for displaying a subscription."""
    id: int
    restaurant_id: str
    plan_id: int
    start_date: datetime
    end_date: datetime
    status: SubscriptionStatus
    payment_status: SubscriptionPaymentStatus
    payment_method: Optional[str]
    cancel_reason: Optional[str]

    class Config:
        from_attributes = True


class SweepResponse(BaseModel):
    expired_subscriptions: int
    expired_checkouts: int
    restaurant_flags_changed: int


class WebhookAck(BaseModel):
    received: bool
    event_id: str
    type: str
    duplicate: bool
    handled: bool
