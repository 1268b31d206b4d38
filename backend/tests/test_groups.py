"""
Restaurant group membership tests.

Membership starts only when the invited restaurant's owner accepts.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select

from backend.app.core.exceptions import ConflictError, InsufficientPermissionsError, NotFoundError
from backend.app.domain.ledger import groups
from backend.app.domain.ledger.ledger_store import BalanceDelta, LedgerStore
from backend.app.models.enums import UserRole
from backend.app.models.ledger_enums import JoinRequestStatus, TransactionKind
from backend.app.models.notification import Notification
from backend.app.models.user import User
from backend.tests.support import auth_headers, create_restaurant, create_user, join_group


@pytest.fixture
async def restaurants(db_session):
    owner = await create_user(db_session, "owner", UserRole.RESTAURANT_OWNER)
    other_owner = await create_user(db_session, "other", UserRole.RESTAURANT_OWNER)
    a = await create_restaurant(db_session, owner, "alpha")
    b = await create_restaurant(db_session, other_owner, "bravo")
    c = await create_restaurant(db_session, other_owner, "charlie")
    return owner, a, b, c


@pytest.mark.asyncio
async def test_group_pool_is_owner_then_members(uow, restaurants):
    _, a, b, c = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        await join_group(db, group.id, c)
        await join_group(db, group.id, b)
        pool = await groups.group_restaurant_ids(db, group)
        target = await groups.resolve_target(db, group.id)

    assert pool == [a.id] + sorted([b.id, c.id])
    assert target.is_group
    assert target.restaurant_ids == pool
    assert target.owner_user_id == a.owner_id


@pytest.mark.asyncio
async def test_invitation_does_not_join_until_accepted(uow, restaurants):
    _, a, b, _ = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        request = await groups.invite_restaurant(db, group.id, b.id)
        assert request.status == JoinRequestStatus.PENDING
        assert request.from_restaurant_id == a.id
        assert await groups.group_restaurant_ids(db, group) == [a.id]
        assert [r.id for r in await groups.pending_invites(db, b.owner_id)] == [request.id]
        assert await groups.pending_invites(db, a.owner_id) == []
        group_id, request_id = group.id, request.id

    async with uow.atomic() as db:
        request = await groups.respond_to_invite(db, request_id, b.owner_id, accept=True)
        assert request.status == JoinRequestStatus.ACCEPTED
        assert request.responded_at is not None
        assert (await groups.group_of(db, b.id)).id == group_id
        assert await groups.pending_invites(db, b.owner_id) == []


@pytest.mark.asyncio
async def test_only_invited_owner_can_answer(uow, restaurants):
    _, a, b, _ = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        request = await groups.invite_restaurant(db, group.id, b.id)
        request_id = request.id

    # The inviting owner cannot accept on the invited restaurant's behalf
    with pytest.raises(InsufficientPermissionsError):
        async with uow.atomic() as db:
            await groups.respond_to_invite(db, request_id, a.owner_id, accept=True)

    async with uow.atomic() as db:
        assert await groups.group_of(db, b.id) is None

    with pytest.raises(NotFoundError):
        async with uow.atomic() as db:
            await groups.respond_to_invite(db, 9999, b.owner_id, accept=True)


@pytest.mark.asyncio
async def test_rejected_invitation_is_final(uow, restaurants):
    _, a, b, _ = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        request = await groups.invite_restaurant(db, group.id, b.id)
        group_id, request_id = group.id, request.id

    async with uow.atomic() as db:
        request = await groups.respond_to_invite(db, request_id, b.owner_id, accept=False)
        assert request.status == JoinRequestStatus.REJECTED
        assert await groups.group_of(db, b.id) is None

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.respond_to_invite(db, request_id, b.owner_id, accept=True)

    # A fresh invitation can follow a rejection
    async with uow.atomic() as db:
        again = await groups.invite_restaurant(db, group_id, b.id)
        assert again.id != request_id


@pytest.mark.asyncio
async def test_duplicate_pending_invitation_rejected(uow, restaurants):
    _, a, b, _ = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        await groups.invite_restaurant(db, group.id, b.id)
        group_id = group.id

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.invite_restaurant(db, group_id, b.id)


@pytest.mark.asyncio
async def test_restaurant_owns_at_most_one_group(uow, restaurants):
    _, a, _, _ = restaurants
    async with uow.atomic() as db:
        await groups.create_group(db, a.id, "First")

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.create_group(db, a.id, "Second")


@pytest.mark.asyncio
async def test_member_cannot_join_second_group_or_own_one(uow, restaurants):
    _, a, b, c = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        await join_group(db, group.id, b)
        other = await groups.create_group(db, c.id, "Charlie Group")
        group_id, other_id = group.id, other.id

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.invite_restaurant(db, other_id, b.id)

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.create_group(db, b.id, "Bravo Group")

    # A group owner cannot become a member elsewhere
    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.invite_restaurant(db, group_id, c.id)


@pytest.mark.asyncio
async def test_accept_rechecks_membership(uow, restaurants, db_session):
    """Two open invitations: once one is accepted the other can no longer be."""
    _, a, b, _ = restaurants
    third_owner = await create_user(db_session, "third", UserRole.RESTAURANT_OWNER)
    d = await create_restaurant(db_session, third_owner, "delta")
    async with uow.atomic() as db:
        first = await groups.create_group(db, a.id, "Alpha Group")
        second = await groups.create_group(db, d.id, "Delta Group")
        first_request = await groups.invite_restaurant(db, first.id, b.id)
        second_request = await groups.invite_restaurant(db, second.id, b.id)
        first_id, second_id = first_request.id, second_request.id

    async with uow.atomic() as db:
        await groups.respond_to_invite(db, first_id, b.owner_id, accept=True)

    with pytest.raises(ConflictError):
        async with uow.atomic() as db:
            await groups.respond_to_invite(db, second_id, b.owner_id, accept=True)


@pytest.mark.asyncio
async def test_remove_member_and_group_of(uow, restaurants):
    _, a, b, _ = restaurants
    async with uow.atomic() as db:
        group = await groups.create_group(db, a.id, "Alpha Group")
        await join_group(db, group.id, b)
        assert (await groups.group_of(db, b.id)).id == group.id
        assert (await groups.group_of(db, a.id)).id == group.id

    async with uow.atomic() as db:
        await groups.remove_member(db, group.id, b.id)
        assert await groups.group_of(db, b.id) is None

    with pytest.raises(NotFoundError):
        async with uow.atomic() as db:
            await groups.remove_member(db, group.id, b.id)


@pytest.mark.asyncio
async def test_resolve_target_prefers_restaurant(uow, restaurants):
    _, a, _, _ = restaurants
    async with uow.atomic() as db:
        target = await groups.resolve_target(db, a.id)
    assert not target.is_group
    assert target.restaurant_ids == [a.id]

    with pytest.raises(NotFoundError):
        async with uow.atomic() as db:
            await groups.resolve_target(db, "unknown")


# --- API ---

@pytest.mark.asyncio
async def test_group_invitation_flow(client, restaurants, db_session, session_factory):
    owner, a, b, _ = restaurants
    headers = auth_headers(owner)
    other_headers = auth_headers(await db_session.get(User, b.owner_id))

    response = await client.post("/v1/restaurant/groups", json={"name": "Alpha Group"}, headers=headers)
    assert response.status_code == 200
    group = response.json()
    assert group["owner_restaurant_id"] == a.id
    assert group["restaurant_ids"] == [a.id]

    response = await client.post(
        f"/v1/restaurant/groups/{group['id']}/invitations", json={"restaurant_id": b.id}, headers=headers
    )
    assert response.status_code == 200
    invitation = response.json()
    assert invitation["status"] == "PENDING"

    # The inviter cannot answer for the invited restaurant
    response = await client.put(
        f"/v1/restaurant/groups/invitations/{invitation['id']}", json={"status": "ACCEPTED"}, headers=headers
    )
    assert response.status_code == 403

    response = await client.get("/v1/restaurant/groups/invitations", headers=other_headers)
    assert [i["id"] for i in response.json()] == [invitation["id"]]

    response = await client.put(
        f"/v1/restaurant/groups/invitations/{invitation['id']}", json={"status": "PENDING"}, headers=other_headers
    )
    assert response.status_code == 422

    response = await client.put(
        f"/v1/restaurant/groups/invitations/{invitation['id']}", json={"status": "ACCEPTED"}, headers=other_headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ACCEPTED"

    async with session_factory() as db:
        titles = {
            (n.user_id, n.title)
            for n in (await db.execute(select(Notification))).scalars().all()
        }
    assert titles == {
        (b.owner_id, "Group join invitation"),
        (a.owner_id, "Group join request accepted"),
    }

    # Conflict surfaces as 409
    response = await client.post("/v1/restaurant/groups", json={"name": "Again"}, headers=headers)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CONFLICT_001"

    response = await client.delete(f"/v1/restaurant/groups/{group['id']}/members/{b.id}", headers=headers)
    assert response.status_code == 200
    assert response.json()["restaurant_ids"] == [a.id]


@pytest.mark.asyncio
async def test_unaccepted_restaurant_balances_stay_out_of_group_payments(client, restaurants, db_session, uow):
    """A customer's balance at an invited but not accepted restaurant cannot be spent at the group."""
    owner, a, b, _ = restaurants
    customer = await create_user(db_session, "customer")
    async with uow.atomic() as db:
        await LedgerStore().apply_delta(
            db, customer.id, b.id, TransactionKind.TOPUP, BalanceDelta(balance=Decimal("50.00"))
        )

    response = await client.post("/v1/restaurant/groups", json={"name": "Alpha Group"}, headers=auth_headers(owner))
    group_id = response.json()["id"]
    response = await client.post(
        f"/v1/restaurant/groups/{group_id}/invitations", json={"restaurant_id": b.id}, headers=auth_headers(owner)
    )
    assert response.status_code == 200

    response = await client.post(
        "/v1/client/balances/pay",
        json={"target_id": group_id, "currency_type": "balance", "amount": "50.00"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_FUNDS_001"

    async with uow.atomic() as db:
        account = await LedgerStore().get_balance(db, customer.id, b.id)
    assert account.balance == Decimal("50.00")


@pytest.mark.asyncio
async def test_invite_requires_group_ownership(client, restaurants, db_session):
    owner, a, b, c = restaurants
    response = await client.post("/v1/restaurant/groups", json={"name": "Alpha Group"}, headers=auth_headers(owner))
    group_id = response.json()["id"]

    other_owner = await create_user(db_session, "intruder", UserRole.RESTAURANT_OWNER)
    await create_restaurant(db_session, other_owner, "echo")
    response = await client.post(
        f"/v1/restaurant/groups/{group_id}/invitations", json={"restaurant_id": c.id}, headers=auth_headers(other_owner)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_group_endpoints_require_restaurant_owner(client, db_session, restaurants):
    customer = await create_user(db_session, "customer")
    response = await client.post("/v1/restaurant/groups", json={"name": "X"}, headers=auth_headers(customer))
    assert response.status_code == 403
