"""
Top-up Package database model.
"""

from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, Boolean, ForeignKey
from backend.app.db.session import Base


class TopUpPackage(Base):
    """Prepaid credit a restaurant sells at the counter: `amount` paid, `amount + bonus` credited."""
    __tablename__ = "topup_packages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    bonus = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)
