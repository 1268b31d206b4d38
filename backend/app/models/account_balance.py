"""
Account Balance database model.

Current per-(user, restaurant) value. Created lazily on the first credit and
never deleted.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from backend.app.db.session import Base


class AccountBalance(Base):
    """
    Account Balance model.

    Every field has a floor of zero, enforced by the ledger store before any
    write and by CHECK constraints as a last line.
    """
    __tablename__ = "account_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "restaurant_id", name="uq_balance_user_restaurant"),
        CheckConstraint("balance >= 0", name="ck_balance_non_negative"),
        CheckConstraint("stars_meal >= 0", name="ck_stars_meal_non_negative"),
        CheckConstraint("stars_drink >= 0", name="ck_stars_drink_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)

    balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    stars_meal = Column(Integer, default=0, nullable=False)
    stars_drink = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<AccountBalance(user={self.user_id}, restaurant={self.restaurant_id}, "
            f"balance={self.balance}, meal={self.stars_meal}, drink={self.stars_drink})>"
        )
