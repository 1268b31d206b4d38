"""
Payment database model.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum
from backend.app.db.session import Base
from backend.app.models.billing_enums import PaymentProvider, PaymentStatus


class Payment(Base):
    """
    One checkout attempt. `checkout_session_id` is the provider handle the
    confirmation and webhooks refer to (Stripe session id, PayPal order id).
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)

    provider = Column(Enum(PaymentProvider), nullable=False)
    checkout_session_id = Column(String(255), unique=True, nullable=False)
    transaction_id = Column(String(255), nullable=True)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.CREATED, nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    payment_method = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Payment(id={self.id}, provider='{self.provider.value}', status='{self.status.value}')>"
