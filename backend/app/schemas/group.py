"""
Restaurant group schemas.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional
from backend.app.models.ledger_enums import JoinRequestStatus


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class GroupInvite(BaseModel):
    """Restaurant to invite into the caller's group."""
    restaurant_id: str = Field(..., min_length=1)


class GroupResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    owner_restaurant_id: str
    restaurant_ids: List[str]


class JoinRequestDecision(BaseModel):
    status: JoinRequestStatus

    @field_validator("status")
    @classmethod
    def final_status(cls, v: JoinRequestStatus) -> JoinRequestStatus:
        if v == JoinRequestStatus.PENDING:
            raise ValueError("status must be ACCEPTED or REJECTED")
        return v


class JoinRequestResponse(BaseModel):
    id: int
    group_id: str
    from_restaurant_id: str
    to_restaurant_id: str
    status: JoinRequestStatus
    created_at: datetime
    responded_at: Optional[datetime]

    class Config:
        from_attributes = True
