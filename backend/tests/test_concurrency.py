"""
Concurrency Tests.

Validates that race conditions are handled correctly: a competing request
that commits between our read-side check and our insert is caught by the
unique key, and the retried unit of work lands on the replay path.
"""

import logging

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select

from backend.app.domain.billing.checkout_service import CheckoutCommand, CheckoutService
from backend.app.domain.billing.subscription_reconciler import SubscriptionReconciler
from backend.app.domain.ledger.ledger_store import LedgerStore
from backend.app.domain.ledger.transfer_engine import ScanCommand, TransferEngine
from backend.app.models.enums import UserRole
from backend.app.models.invoice import Invoice
from backend.app.models.ledger_enums import ScanType
from backend.app.models.ledger_transaction import LedgerTransaction
from backend.app.models.subscription import Subscription
from backend.app.models.webhook_event import WebhookEvent
from backend.tests.support import (
    create_plan,
    create_restaurant,
    create_user,
    sign_stripe_payload,
    stripe_event,
    test_settings,
    utc_timestamp,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


class LateLedgerStore(LedgerStore):
    """Idempotency lookups miss `misses` times, as if the other scan had not committed yet."""

    def __init__(self, misses: int):
        self.misses = misses

    async def find_transaction(self, db, idempotency_key):
        if self.misses:
            self.misses -= 1
            return None
        return await super().find_transaction(db, idempotency_key)


class LateReconciler(SubscriptionReconciler):
    """Both deliveries pass every read-side check before either commits."""

    late_claims = 1

    async def _already_processed(self, event_id):
        return False

    async def _claim_event(self, db, event_id, event_type):
        if self.late_claims:
            self.late_claims -= 1
            db.add(WebhookEvent(provider_event_id=event_id, event_type=event_type))
            await db.flush()
            return True
        return await SubscriptionReconciler._claim_event(db, event_id, event_type)


async def load_all(session_factory, model):
    async with session_factory() as db:
        result = await db.execute(select(model).order_by(model.id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_concurrent_scans_collapse_to_one_accrual(uow, db_session, session_factory, caplog):
    caplog.set_level(logging.INFO, logger="loyalty.uow")
    owner = await create_user(db_session, "owner", UserRole.RESTAURANT_OWNER)
    alice = await create_user(db_session, "alice")
    bistro = await create_restaurant(db_session, owner, "bistro")
    command = ScanCommand(
        restaurant_id=bistro.id,
        scan_type=ScanType.MEAL,
        qr_code=bistro.qr_code_meal,
        latitude=48.8566,
        longitude=2.3522,
    )

    first = await TransferEngine(uow, settings=test_settings, clock=lambda: NOW).record_scan(alice.id, command)

    # The second scan checked the key before the first one committed:
    # both the engine's and the store's lookups miss once
    late_ledger = LateLedgerStore(misses=2)
    second = await TransferEngine(
        uow, ledger=late_ledger, settings=test_settings, clock=lambda: NOW
    ).record_scan(alice.id, command)

    assert late_ledger.misses == 0
    assert "Storage conflict (IntegrityError)" in caplog.text
    assert not first.replayed
    assert second.replayed
    assert second.stars_added == 0
    assert second.balance.stars_meal == 10

    rows = await load_all(session_factory, LedgerTransaction)
    assert len(rows) == 1
    assert rows[0].stars_meal_delta == 10


@pytest.mark.asyncio
async def test_concurrent_webhook_deliveries_apply_once(uow, gateways, db_session, session_factory):
    owner = await create_user(db_session, "owner", UserRole.RESTAURANT_OWNER)
    await create_restaurant(db_session, owner, "bistro")
    plan = await create_plan(db_session)
    session = await CheckoutService(uow, gateways, settings=test_settings).create_checkout(
        owner.id, CheckoutCommand(plan_id=plan.id)
    )

    start = datetime.utcnow().replace(microsecond=0)
    period_end = start + timedelta(days=30)
    payload = stripe_event("evt_1", "checkout.session.completed", {
        "id": session.handle,
        "object": "checkout.session",
        "mode": "subscription",
        "status": "complete",
        "payment_status": "paid",
        "invoice": "in_1",
        "subscription": {
            "id": "sub_1",
            "current_period_start": utc_timestamp(start),
            "current_period_end": utc_timestamp(period_end),
        },
    })

    first = await SubscriptionReconciler(uow, gateways).handle_webhook_event(payload, sign_stripe_payload(payload))
    late = LateReconciler(uow, gateways)
    second = await late.handle_webhook_event(payload, sign_stripe_payload(payload))

    assert late.late_claims == 0
    assert first["handled"] is True
    assert second["duplicate"] is True
    assert len(await load_all(session_factory, WebhookEvent)) == 1
    assert [i.provider_invoice_id for i in await load_all(session_factory, Invoice)] == ["in_1"]
    assert (await load_all(session_factory, Subscription))[0].end_date == period_end
