"""
Plan database model.
"""

from sqlalchemy import Column, Integer, String, Numeric, Boolean
from backend.app.db.session import Base


class Plan(Base):
    """Subscription plan sold to restaurants. `duration` is in days."""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    duration = Column(Integer, nullable=False)
    stripe_price_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    @property
    def is_free(self) -> bool:
        return self.price <= 0 or "free" in (self.title or "").lower()

    def __repr__(self):
        return f"<Plan(id={self.id}, title='{self.title}', duration={self.duration})>"
