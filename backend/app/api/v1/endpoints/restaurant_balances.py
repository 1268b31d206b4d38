"""
Restaurant Owner Balance API Endpoints.
"""

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_transfer_engine
from backend.app.core.guards import require_role
from backend.app.domain.ledger.transfer_engine import TransferEngine, TopUpCommand
from backend.app.models.enums import UserRole
from backend.app.schemas.balance import TopUpRequest, TopUpResponse

router = APIRouter(prefix="/restaurant/balances", tags=["Restaurant - Balances"])


@router.post("/topup", response_model=TopUpResponse)
async def top_up(
    req: TopUpRequest,
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    engine: TransferEngine = Depends(get_transfer_engine)
):
    """Credit a top-up package to a customer identified by QR code."""
    return await engine.top_up(
        current_user["user_id"],
        TopUpCommand(user_qr_code=req.user_qr_code, package_id=req.package_id)
    )
