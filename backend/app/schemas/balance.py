"""
Balance and transfer schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict
from backend.app.models.ledger_enums import CurrencyType, ScanType, TransactionKind


class ScanRequest(BaseModel):
    """QR scan at a restaurant, with the client's current position."""
    restaurant_id: str = Field(..., min_length=1)
    scan_type: ScanType
    qr_code: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class PayRequest(BaseModel):
    target_id: str = Field(..., min_length=1, description="Restaurant or group id")
    currency_type: CurrencyType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class GiftRequest(BaseModel):
    recipient_qr_code: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1, description="Restaurant or group id")
    currency_type: CurrencyType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class TopUpRequest(BaseModel):
    user_qr_code: str = Field(..., min_length=1)
    package_id: int


class BalanceResponse(BaseModel):
    restaurant_id: str
    balance: Decimal
    stars_meal: int
    stars_drink: int

    class Config:
        from_attributes = True


class ScanResponse(BaseModel):
    restaurant_id: str
    scan_type: ScanType
    stars_added: int
    replayed: bool
    balance: BalanceResponse


class TransferLegResponse(BaseModel):
    restaurant_id: str
    amount: Decimal


class TransferResponse(BaseModel):
    operation_id: str
    target_id: str
    is_group: bool
    currency_type: CurrencyType
    amount: Decimal
    legs: List[TransferLegResponse]


class TopUpResponse(BaseModel):
    operation_id: str
    restaurant_id: str
    user_id: int
    credited: Decimal
    balance: BalanceResponse


class BalanceSummaryResponse(BaseModel):
    target_id: str
    name: str
    is_group: bool
    restaurant_ids: List[str]
    balance: Decimal
    stars_meal: int
    stars_drink: int


class LedgerTransactionResponse(BaseModel):
    id: int
    restaurant_id: str
    kind: TransactionKind
    balance_delta: Decimal
    stars_meal_delta: int
    stars_drink_delta: int
    operation_id: Optional[str]
    counterparty_user_id: Optional[int]
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ReconciliationResponse(BaseModel):
    user_id: int
    restaurant_id: str
    as_of: Optional[datetime]
    stored: Dict[str, str]
    computed: Dict[str, str]
    transaction_count: int
    matches: bool
