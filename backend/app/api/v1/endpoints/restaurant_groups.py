"""
Restaurant Group API Endpoints.

Group owners invite restaurants; an invited restaurant's owner accepts or
rejects. Accepted members pool customer balances with the group.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from backend.app.api.deps import get_notifier, get_uow
from backend.app.core.exceptions import NotFoundError
from backend.app.core.guards import require_role
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.ledger import groups
from backend.app.models.enums import UserRole
from backend.app.models.ledger_enums import JoinRequestStatus
from backend.app.models.notification import NotificationType
from backend.app.models.restaurant import Restaurant, RestaurantGroup
from backend.app.schemas.group import (
    GroupCreate,
    GroupInvite,
    GroupResponse,
    JoinRequestDecision,
    JoinRequestResponse,
)
from backend.app.services.notification_service import DatabaseNotificationSink, NotificationEvent

router = APIRouter(prefix="/restaurant/groups", tags=["Restaurant - Groups"])


async def _owned_restaurant(db: AsyncSession, owner_user_id: int) -> Restaurant:
    result = await db.execute(
        select(Restaurant).where(Restaurant.owner_id == owner_user_id).order_by(Restaurant.created_at)
    )
    restaurant = result.scalars().first()
    if not restaurant:
        raise NotFoundError("Restaurant")
    return restaurant


async def _owned_group(db: AsyncSession, owner_user_id: int, group_id: str) -> RestaurantGroup:
    restaurant = await _owned_restaurant(db, owner_user_id)
    group = await db.get(RestaurantGroup, group_id)
    if not group or group.owner_restaurant_id != restaurant.id:
        raise NotFoundError("Group", group_id)
    return group


async def _describe(db: AsyncSession, group: RestaurantGroup) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        name=group.name,
        description=group.description,
        owner_restaurant_id=group.owner_restaurant_id,
        restaurant_ids=await groups.group_restaurant_ids(db, group)
    )


@router.post("", response_model=GroupResponse)
async def create_group(
    req: GroupCreate,
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    uow: UnitOfWork = Depends(get_uow)
):
    """Create a group owned by the caller's restaurant."""
    async def operation(db: AsyncSession):
        restaurant = await _owned_restaurant(db, current_user["user_id"])
        group = await groups.create_group(db, restaurant.id, req.name, req.description)
        return await _describe(db, group)

    return await uow.run(operation)


@router.post("/{group_id}/invitations", response_model=JoinRequestResponse)
async def invite_restaurant(
    req: GroupInvite,
    group_id: str = Path(...),
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    uow: UnitOfWork = Depends(get_uow),
    notifier: DatabaseNotificationSink = Depends(get_notifier)
):
    """Invite a restaurant. It joins only once its owner accepts."""
    async def operation(db: AsyncSession):
        group = await _owned_group(db, current_user["user_id"], group_id)
        request = await groups.invite_restaurant(db, group.id, req.restaurant_id)
        invited = await db.get(Restaurant, req.restaurant_id)
        return JoinRequestResponse.model_validate(request), invited.owner_id, group.name

    response, invited_owner_id, group_name = await uow.run(operation)
    await notifier.publish(NotificationEvent(
        user_id=invited_owner_id,
        title="Group join invitation",
        message=f"You have been invited to join the group {group_name}",
        type=NotificationType.GROUP,
        metadata={"request_id": response.id, "group_id": response.group_id}
    ))
    return response


@router.get("/invitations", response_model=List[JoinRequestResponse])
async def list_invitations(
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    uow: UnitOfWork = Depends(get_uow)
):
    """Pending invitations addressed to the caller's restaurants."""
    async with uow.atomic() as db:
        requests = await groups.pending_invites(db, current_user["user_id"])
        return [JoinRequestResponse.model_validate(r) for r in requests]


@router.put("/invitations/{request_id}", response_model=JoinRequestResponse)
async def respond_to_invitation(
    req: JoinRequestDecision,
    request_id: int = Path(..., gt=0),
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    uow: UnitOfWork = Depends(get_uow),
    notifier: DatabaseNotificationSink = Depends(get_notifier)
):
    """Accept or reject an invitation addressed to one of the caller's restaurants."""
    accept = req.status == JoinRequestStatus.ACCEPTED

    async def operation(db: AsyncSession):
        request = await groups.respond_to_invite(db, request_id, current_user["user_id"], accept)
        inviter = await db.get(Restaurant, request.from_restaurant_id)
        member = await db.get(Restaurant, request.to_restaurant_id)
        return JoinRequestResponse.model_validate(request), inviter.owner_id, member.name

    response, inviter_owner_id, member_name = await uow.run(operation)
    if accept:
        await notifier.publish(NotificationEvent(
            user_id=inviter_owner_id,
            title="Group join request accepted",
            message=f"{member_name} has joined your group",
            type=NotificationType.GROUP,
            metadata={"request_id": response.id, "group_id": response.group_id}
        ))
    return response


@router.delete("/{group_id}/members/{restaurant_id}", response_model=GroupResponse)
async def remove_group_member(
    group_id: str = Path(...),
    restaurant_id: str = Path(...),
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    uow: UnitOfWork = Depends(get_uow)
):
    async def operation(db: AsyncSession):
        group = await _owned_group(db, current_user["user_id"], group_id)
        await groups.remove_member(db, group.id, restaurant_id)
        return await _describe(db, group)

    return await uow.run(operation)
