"""
User database model.

Users authenticate through the external auth service; this table carries the
fields the loyalty core needs (role, QR code for gifts and top-ups).
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from backend.app.db.session import Base
from backend.app.models.enums import UserRole


class User(Base):
    """
    User model.

    `qr_code` is the personal code other users and restaurants use to address
    gifts and top-ups.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    qr_code = Column(String(255), unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role = Column(Enum(UserRole), default=UserRole.CLIENT, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role.value}')>"
