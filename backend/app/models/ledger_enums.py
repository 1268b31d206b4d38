"""
Ledger enumerations.
"""

import enum


class CurrencyType(str, enum.Enum):
    """Value kinds held per (user, restaurant) balance."""
    BALANCE = "balance"  # Monetary credit
    STARS_MEAL = "stars_meal"
    STARS_DRINK = "stars_drink"


class TransactionKind(str, enum.Enum):
    """Ledger transaction kind enumeration."""
    SCAN_ACCRUAL = "SCAN_ACCRUAL"
    PAYMENT_DEBIT = "PAYMENT_DEBIT"
    GIFT_SEND = "GIFT_SEND"
    GIFT_RECEIVE = "GIFT_RECEIVE"
    TOPUP = "TOPUP"


class ScanType(str, enum.Enum):
    MEAL = "meal"
    DRINK = "drink"


class JoinRequestStatus(str, enum.Enum):
    """Group invitation state. Only PENDING requests can be answered."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
