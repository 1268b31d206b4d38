"""
Subscription database model.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from backend.app.db.session import Base
from backend.app.models.billing_enums import SubscriptionStatus, SubscriptionPaymentStatus


class Subscription(Base):
    """
    Subscription model.

    Created PENDING at checkout and activated by the reconciler. At most one
    ACTIVE subscription exists per (restaurant, plan); a renewal extends it
    instead of creating a second one.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(Enum(SubscriptionStatus), default=SubscriptionStatus.PENDING, nullable=False, index=True)

    payment_id = Column(Integer, ForeignKey("payments.id"), unique=True, nullable=True)
    payment_status = Column(Enum(SubscriptionPaymentStatus), default=SubscriptionPaymentStatus.UNPAID, nullable=False)
    payment_method = Column(String(100), nullable=True)

    # Provider-side recurring subscription
    provider_subscription_id = Column(String(255), nullable=True, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    cancel_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def effective_status(self, now: datetime = None) -> SubscriptionStatus:
        """ACTIVE subscriptions past their end date read as EXPIRED before the sweep catches them."""
        now = now or datetime.utcnow()
        if self.status == SubscriptionStatus.ACTIVE and self.end_date < now:
            return SubscriptionStatus.EXPIRED
        return self.status

    def __repr__(self):
        return f"<Subscription(id={self.id}, restaurant={self.restaurant_id}, status='{self.status.value}')>"
