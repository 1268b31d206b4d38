"""
Restaurant Group Membership (Domain Logic).

A restaurant owns at most one group and belongs to at most one group, never
both. A group's pool is its owner restaurant plus its members. Members join
only when their own owner accepts an invitation from the group.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ConflictError, InsufficientPermissionsError, NotFoundError
from backend.app.db.unit_of_work import lock_for_update
from backend.app.models.ledger_enums import JoinRequestStatus
from backend.app.models.restaurant import Restaurant, RestaurantGroup, GroupMembership, GroupJoinRequest

logger = logging.getLogger("loyalty.groups")


@dataclass
class PaymentTarget:
    """A pay/gift destination: one restaurant, or a group pooling several."""
    target_id: str
    name: str
    is_group: bool
    restaurant_ids: List[str]
    owner_user_id: int


async def _owned_group(db: AsyncSession, restaurant_id: str) -> Optional[RestaurantGroup]:
    result = await db.execute(
        select(RestaurantGroup).where(RestaurantGroup.owner_restaurant_id == restaurant_id)
    )
    return result.scalar_one_or_none()


async def _membership(db: AsyncSession, restaurant_id: str) -> Optional[GroupMembership]:
    result = await db.execute(
        select(GroupMembership).where(GroupMembership.restaurant_id == restaurant_id)
    )
    return result.scalar_one_or_none()


async def group_restaurant_ids(db: AsyncSession, group: RestaurantGroup) -> List[str]:
    """Owner restaurant first, then members in id order."""
    result = await db.execute(
        select(GroupMembership.restaurant_id)
        .where(GroupMembership.group_id == group.id)
        .order_by(GroupMembership.restaurant_id)
    )
    return [group.owner_restaurant_id] + list(result.scalars().all())


async def create_group(
    db: AsyncSession,
    owner_restaurant_id: str,
    name: str,
    description: Optional[str] = None
) -> RestaurantGroup:
    restaurant = await db.get(Restaurant, owner_restaurant_id)
    if not restaurant:
        raise NotFoundError("Restaurant", owner_restaurant_id)

    if await _owned_group(db, owner_restaurant_id):
        raise ConflictError("Restaurant already owns a group", details={"restaurant_id": owner_restaurant_id})
    if await _membership(db, owner_restaurant_id):
        raise ConflictError("Restaurant is already a member of a group", details={"restaurant_id": owner_restaurant_id})

    group = RestaurantGroup(name=name, description=description, owner_restaurant_id=owner_restaurant_id)
    db.add(group)
    await db.flush()
    logger.info("Group %s created by restaurant %s", group.id, owner_restaurant_id)
    return group


async def _check_can_join(db: AsyncSession, restaurant_id: str) -> None:
    if await _owned_group(db, restaurant_id):
        raise ConflictError("A group owner cannot join another group", details={"restaurant_id": restaurant_id})
    if await _membership(db, restaurant_id):
        raise ConflictError("Restaurant is already a member of a group", details={"restaurant_id": restaurant_id})


async def invite_restaurant(db: AsyncSession, group_id: str, restaurant_id: str) -> GroupJoinRequest:
    """
    Open a PENDING join request from the group's owner restaurant.

    Nothing joins the pool here; only the invited restaurant's owner can
    accept (see `respond_to_invite`).
    """
    group = await db.get(RestaurantGroup, group_id)
    if not group:
        raise NotFoundError("Group", group_id)
    restaurant = await db.get(Restaurant, restaurant_id)
    if not restaurant:
        raise NotFoundError("Restaurant", restaurant_id)

    await _check_can_join(db, restaurant_id)

    result = await db.execute(
        select(GroupJoinRequest.id).where(
            GroupJoinRequest.group_id == group_id,
            GroupJoinRequest.to_restaurant_id == restaurant_id,
            GroupJoinRequest.status == JoinRequestStatus.PENDING
        )
    )
    if result.first() is not None:
        raise ConflictError("There is already a pending request for this restaurant", details={"restaurant_id": restaurant_id})

    request = GroupJoinRequest(
        group_id=group_id,
        from_restaurant_id=group.owner_restaurant_id,
        to_restaurant_id=restaurant_id,
        status=JoinRequestStatus.PENDING
    )
    db.add(request)
    await db.flush()
    logger.info("Group %s invited restaurant %s (request %s)", group_id, restaurant_id, request.id)
    return request


async def respond_to_invite(
    db: AsyncSession,
    request_id: int,
    responder_user_id: int,
    accept: bool,
    now: Optional[datetime] = None
) -> GroupJoinRequest:
    """Accept or reject a PENDING request. Only the invited restaurant's owner may answer."""
    result = await db.execute(lock_for_update(select(GroupJoinRequest).where(GroupJoinRequest.id == request_id)))
    request = result.scalar_one_or_none()
    if not request:
        raise NotFoundError("Join request", request_id)

    restaurant = await db.get(Restaurant, request.to_restaurant_id)
    if restaurant is None or restaurant.owner_id != responder_user_id:
        raise InsufficientPermissionsError("Not authorized to respond to this request")
    if request.status != JoinRequestStatus.PENDING:
        raise ConflictError(
            f"Join request is already {request.status.value}",
            details={"request_id": request_id, "status": request.status.value}
        )

    if accept:
        await _check_can_join(db, request.to_restaurant_id)
        db.add(GroupMembership(group_id=request.group_id, restaurant_id=request.to_restaurant_id))

    request.status = JoinRequestStatus.ACCEPTED if accept else JoinRequestStatus.REJECTED
    request.responded_at = now or datetime.utcnow()
    await db.flush()
    logger.info("Join request %s %s", request_id, request.status.value)
    return request


async def pending_invites(db: AsyncSession, owner_user_id: int) -> List[GroupJoinRequest]:
    """PENDING requests addressed to any restaurant of this owner, oldest first."""
    result = await db.execute(
        select(GroupJoinRequest)
        .join(Restaurant, Restaurant.id == GroupJoinRequest.to_restaurant_id)
        .where(
            Restaurant.owner_id == owner_user_id,
            GroupJoinRequest.status == JoinRequestStatus.PENDING
        )
        .order_by(GroupJoinRequest.id)
    )
    return list(result.scalars().all())


async def remove_member(db: AsyncSession, group_id: str, restaurant_id: str) -> None:
    result = await db.execute(
        select(GroupMembership).where(
            GroupMembership.group_id == group_id,
            GroupMembership.restaurant_id == restaurant_id
        )
    )
    membership = result.scalar_one_or_none()
    if not membership:
        raise NotFoundError("Group membership", restaurant_id)
    await db.delete(membership)
    await db.flush()


async def group_of(db: AsyncSession, restaurant_id: str) -> Optional[RestaurantGroup]:
    """The group a restaurant owns or belongs to, if any."""
    group = await _owned_group(db, restaurant_id)
    if group:
        return group
    membership = await _membership(db, restaurant_id)
    if membership:
        return await db.get(RestaurantGroup, membership.group_id)
    return None


async def resolve_target(db: AsyncSession, target_id: str) -> PaymentTarget:
    """Resolve a target id to a restaurant first, then to a group."""
    restaurant = await db.get(Restaurant, target_id)
    if restaurant:
        return PaymentTarget(
            target_id=restaurant.id,
            name=restaurant.name,
            is_group=False,
            restaurant_ids=[restaurant.id],
            owner_user_id=restaurant.owner_id
        )

    group = await db.get(RestaurantGroup, target_id)
    if group:
        owner_restaurant = await db.get(Restaurant, group.owner_restaurant_id)
        return PaymentTarget(
            target_id=group.id,
            name=group.name,
            is_group=True,
            restaurant_ids=await group_restaurant_ids(db, group),
            owner_user_id=owner_restaurant.owner_id
        )

    raise NotFoundError("Restaurant or group", target_id)
