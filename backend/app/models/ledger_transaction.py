"""
Ledger Transaction database model.

Append-only log of balance mutations.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum
from backend.app.db.session import Base
from backend.app.models.ledger_enums import TransactionKind


class LedgerTransaction(Base):
    """
    Ledger Transaction model.

    Immutable record of one balance mutation. The legs of a single business
    operation (a group payment, both sides of a gift) share `operation_id`.
    For any balance, the sum of its transaction deltas equals the stored value.
    NO updates or deletions allowed.
    """
    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)

    kind = Column(Enum(TransactionKind), nullable=False)

    balance_delta = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    stars_meal_delta = Column(Integer, default=0, nullable=False)
    stars_drink_delta = Column(Integer, default=0, nullable=False)

    # De-duplication key (scan accruals)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    operation_id = Column(String(36), nullable=True, index=True)
    counterparty_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    note = Column(String(255), nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<LedgerTransaction(id={self.id}, kind='{self.kind.value}', user={self.user_id})>"
