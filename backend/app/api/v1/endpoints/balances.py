"""
Client Balance API Endpoints.

Scan accrual, payment and gift for end users.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from backend.app.api.deps import get_transfer_engine, get_ledger_store
from backend.app.core.guards import require_role
from backend.app.db.session import get_db
from backend.app.domain.ledger.ledger_store import LedgerStore
from backend.app.domain.ledger.transfer_engine import (
    TransferEngine, ScanCommand, PaymentCommand, GiftCommand
)
from backend.app.models.enums import UserRole
from backend.app.schemas.balance import (
    ScanRequest, ScanResponse, PayRequest, GiftRequest, TransferResponse,
    BalanceSummaryResponse, LedgerTransactionResponse
)

router = APIRouter(prefix="/client/balances", tags=["Client - Balances"])


@router.get("", response_model=List[BalanceSummaryResponse])
async def list_balances(
    current_user: dict = Depends(require_role([UserRole.CLIENT])),
    engine: TransferEngine = Depends(get_transfer_engine)
):
    """List non-zero balances, grouped restaurants rolled up per group."""
    return await engine.list_balances(current_user["user_id"])


@router.get("/transactions", response_model=List[LedgerTransactionResponse])
async def list_transactions(
    restaurant_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.CLIENT])),
    ledger: LedgerStore = Depends(get_ledger_store),
    db: AsyncSession = Depends(get_db)
):
    """Ledger history of the current user, newest first."""
    return await ledger.list_transactions(db, current_user["user_id"], restaurant_id, limit)


@router.post("/scan", response_model=ScanResponse)
async def scan_qr(
    req: ScanRequest,
    current_user: dict = Depends(require_role([UserRole.CLIENT])),
    engine: TransferEngine = Depends(get_transfer_engine)
):
    """Earn stars by scanning a restaurant's meal or drink QR code on site."""
    return await engine.record_scan(
        current_user["user_id"],
        ScanCommand(
            restaurant_id=req.restaurant_id,
            scan_type=req.scan_type,
            qr_code=req.qr_code,
            latitude=req.latitude,
            longitude=req.longitude
        )
    )


@router.post("/pay", response_model=TransferResponse)
async def pay(
    req: PayRequest,
    current_user: dict = Depends(require_role([UserRole.CLIENT])),
    engine: TransferEngine = Depends(get_transfer_engine)
):
    """Pay at a restaurant, or at a group from balances held across its restaurants."""
    return await engine.pay(
        current_user["user_id"],
        PaymentCommand(target_id=req.target_id, currency_type=req.currency_type, amount=req.amount)
    )


@router.post("/gift", response_model=TransferResponse)
async def gift(
    req: GiftRequest,
    current_user: dict = Depends(require_role([UserRole.CLIENT])),
    engine: TransferEngine = Depends(get_transfer_engine)
):
    """Send balance or stars to another user, addressed by their QR code."""
    return await engine.gift(
        current_user["user_id"],
        GiftCommand(
            recipient_qr_code=req.recipient_qr_code,
            target_id=req.target_id,
            currency_type=req.currency_type,
            amount=req.amount
        )
    )
