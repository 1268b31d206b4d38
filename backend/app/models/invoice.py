"""
Invoice database model.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum
from backend.app.db.session import Base
from backend.app.models.billing_enums import InvoiceStatus


class Invoice(Base):
    """
    Invoice model.

    Exactly one row per `provider_invoice_id`; payments without a provider
    invoice use `manual_<paymentId>`.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    provider_invoice_id = Column(String(255), unique=True, nullable=False)
    hosted_invoice_url = Column(String(1024), nullable=True)
    pdf_url = Column(String(1024), nullable=True)

    amount_due = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    amount_paid = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    status = Column(Enum(InvoiceStatus), default=InvoiceStatus.PENDING, nullable=False)
    payment_method = Column(String(100), nullable=True)

    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Invoice(id={self.id}, provider_invoice_id='{self.provider_invoice_id}', status='{self.status.value}')>"
