"""
Admin Billing API Endpoints.

Subscription cancellation, lifecycle sweeps and ledger reconciliation.
"""

from fastapi import APIRouter, Depends, Path, Body, Query
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional

from backend.app.api.deps import get_lifecycle, get_ledger_store
from backend.app.core.guards import require_role
from backend.app.db.session import get_db
from backend.app.domain.billing.subscription_lifecycle import SubscriptionLifecycle
from backend.app.domain.ledger.ledger_store import LedgerStore
from backend.app.models.enums import UserRole
from backend.app.schemas.balance import ReconciliationResponse
from backend.app.schemas.billing import CancelSubscriptionRequest, SubscriptionResponse, SweepResponse

router = APIRouter(prefix="/admin", tags=["Admin - Billing"])


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: int = Path(...),
    req: Optional[CancelSubscriptionRequest] = Body(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle)
):
    """Cancel a subscription. Expired or already cancelled ones are rejected."""
    return await lifecycle.cancel_subscription(subscription_id, req.reason if req else None)


@router.post("/subscriptions/sweep", response_model=SweepResponse)
async def run_subscription_sweep(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle)
):
    """Expire due subscriptions and abandoned checkouts, then refresh restaurant flags."""
    return await lifecycle.run_sweep()


@router.get("/ledger/reconcile", response_model=ReconciliationResponse)
async def reconcile_ledger(
    user_id: int = Query(...),
    restaurant_id: str = Query(...),
    as_of: Optional[datetime] = Query(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    ledger: LedgerStore = Depends(get_ledger_store),
    db: AsyncSession = Depends(get_db)
):
    """Compare a stored balance with the sum of its ledger transactions."""
    return await ledger.reconcile(db, user_id, restaurant_id, as_of)
