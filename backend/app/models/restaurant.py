"""
Restaurant and Restaurant Group database models.

Restaurants and groups share the UUID id space so a payment target id names
exactly one of them.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, Enum
from backend.app.models.ledger_enums import JoinRequestStatus
from backend.app.db.session import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


class Restaurant(Base):
    """
    Restaurant model.

    Carries the two scan QR codes (meal, drink), the location used for the
    scan radius check and the derived `is_subscription_active` flag.
    """
    __tablename__ = "restaurants"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    qr_code_meal = Column(String(255), unique=True, nullable=False)
    qr_code_drink = Column(String(255), unique=True, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_subscription_active = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Restaurant(id={self.id}, name='{self.name}')>"


class RestaurantGroup(Base):
    """
    Restaurant Group.

    Owned by exactly one restaurant. The pool of a group is its owner plus
    its members.
    """
    __tablename__ = "restaurant_groups"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    owner_restaurant_id = Column(String(36), ForeignKey("restaurants.id"), unique=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<RestaurantGroup(id={self.id}, owner={self.owner_restaurant_id})>"


class GroupMembership(Base):
    """A restaurant belongs to at most one group (unique restaurant_id)."""
    __tablename__ = "group_memberships"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(String(36), ForeignKey("restaurant_groups.id"), nullable=False, index=True)
    restaurant_id = Column(String(36), ForeignKey("restaurants.id"), unique=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GroupJoinRequest(Base):
    """
    Invitation from a group owner to another restaurant.

    Membership starts only when the invited restaurant's owner accepts.
    """
    __tablename__ = "group_join_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(String(36), ForeignKey("restaurant_groups.id"), nullable=False, index=True)
    from_restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False)
    to_restaurant_id = Column(String(36), ForeignKey("restaurants.id"), nullable=False, index=True)
    status = Column(Enum(JoinRequestStatus), default=JoinRequestStatus.PENDING, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    responded_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<GroupJoinRequest(id={self.id}, group={self.group_id}, to={self.to_restaurant_id}, status={self.status})>"
