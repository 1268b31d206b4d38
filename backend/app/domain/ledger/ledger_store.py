"""
Ledger Store (Domain Logic).

Per (user, restaurant) balances plus the append-only transaction log.
Every method takes the caller's session so several mutations share one
atomic unit of work; nothing here commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InsufficientFundsError, ValidationError
from backend.app.db.unit_of_work import lock_for_update
from backend.app.models.account_balance import AccountBalance
from backend.app.models.ledger_transaction import LedgerTransaction
from backend.app.models.ledger_enums import CurrencyType, TransactionKind

logger = logging.getLogger("loyalty.ledger")

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BalanceDelta:
    """Signed change applied to the three balance fields of one account."""
    balance: Decimal = Decimal("0.00")
    stars_meal: int = 0
    stars_drink: int = 0

    @classmethod
    def of(cls, currency_type: CurrencyType, amount) -> "BalanceDelta":
        """Build a delta moving `amount` of a single currency kind."""
        if currency_type == CurrencyType.BALANCE:
            return cls(balance=to_money(amount))
        if Decimal(str(amount)) != Decimal(str(amount)).to_integral_value():
            raise ValidationError(
                "Stars amounts must be whole numbers",
                details={"currency_type": currency_type.value, "amount": str(amount)}
            )
        if currency_type == CurrencyType.STARS_MEAL:
            return cls(stars_meal=int(amount))
        return cls(stars_drink=int(amount))

    def negated(self) -> "BalanceDelta":
        return BalanceDelta(-self.balance, -self.stars_meal, -self.stars_drink)

    def is_zero(self) -> bool:
        return self.balance == 0 and self.stars_meal == 0 and self.stars_drink == 0


def available(account: AccountBalance, currency_type: CurrencyType):
    """Current amount of one currency kind held by an account."""
    if currency_type == CurrencyType.BALANCE:
        return to_money(account.balance)
    if currency_type == CurrencyType.STARS_MEAL:
        return account.stars_meal
    return account.stars_drink


@dataclass
class ReconciliationReport:
    user_id: int
    restaurant_id: str
    as_of: Optional[datetime]
    stored: Dict[str, str] = field(default_factory=dict)
    computed: Dict[str, str] = field(default_factory=dict)
    transaction_count: int = 0
    matches: bool = True


class LedgerStore:

    async def get_balance(self, db: AsyncSession, user_id: int, restaurant_id: str) -> AccountBalance:
        """Return the stored balance, or a zero-valued transient one when none exists yet."""
        result = await db.execute(
            select(AccountBalance).where(
                AccountBalance.user_id == user_id,
                AccountBalance.restaurant_id == restaurant_id
            )
        )
        account = result.scalar_one_or_none()
        if account is None:
            account = AccountBalance(
                user_id=user_id,
                restaurant_id=restaurant_id,
                balance=Decimal("0.00"),
                stars_meal=0,
                stars_drink=0
            )
        return account

    async def find_transaction(self, db: AsyncSession, idempotency_key: str) -> Optional[LedgerTransaction]:
        result = await db.execute(
            select(LedgerTransaction).where(LedgerTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def lock_balances(
        self,
        db: AsyncSession,
        user_id: int,
        restaurant_ids: Sequence[str]
    ) -> Dict[str, AccountBalance]:
        """
        Lock the user's existing balance rows for the given restaurants.

        Rows are locked in restaurant-id order so two multi-restaurant
        operations on the same user can never deadlock each other.
        Restaurants without a row are absent from the result.
        """
        if not restaurant_ids:
            return {}
        query = select(AccountBalance).where(
            AccountBalance.user_id == user_id,
            AccountBalance.restaurant_id.in_(list(restaurant_ids))
        ).order_by(AccountBalance.restaurant_id)
        result = await db.execute(lock_for_update(query))
        return {account.restaurant_id: account for account in result.scalars().all()}

    async def apply_delta(
        self,
        db: AsyncSession,
        user_id: int,
        restaurant_id: str,
        kind: TransactionKind,
        delta: BalanceDelta,
        idempotency_key: Optional[str] = None,
        operation_id: Optional[str] = None,
        counterparty_user_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> AccountBalance:
        """
        Apply a signed delta to one (user, restaurant) balance and log it.

        Flow:
        1. Replay check on `idempotency_key` (existing key -> unchanged balance)
        2. Lock the balance row, or start from zero
        3. Floor check on every field (InsufficientFundsError, nothing written)
        4. Persist the balance and append the transaction
        """
        # 1. Idempotency Check
        if idempotency_key is not None:
            existing = await self.find_transaction(db, idempotency_key)
            if existing is not None:
                logger.info("Replay of %s ignored (key=%s)", kind.value, idempotency_key)
                return await self.get_balance(db, user_id, restaurant_id)

        # 2. Lock
        result = await db.execute(
            lock_for_update(
                select(AccountBalance).where(
                    AccountBalance.user_id == user_id,
                    AccountBalance.restaurant_id == restaurant_id
                )
            )
        )
        account = result.scalar_one_or_none()

        current_balance = to_money(account.balance) if account else Decimal("0.00")
        current_meal = account.stars_meal if account else 0
        current_drink = account.stars_drink if account else 0

        # 3. Floor Check
        new_balance = to_money(current_balance + delta.balance)
        new_meal = current_meal + delta.stars_meal
        new_drink = current_drink + delta.stars_drink

        if new_balance < 0 or new_meal < 0 or new_drink < 0:
            raise InsufficientFundsError(
                details={
                    "restaurant_id": restaurant_id,
                    "balance": str(current_balance),
                    "stars_meal": current_meal,
                    "stars_drink": current_drink,
                }
            )

        # 4. Persist
        if account is None:
            account = AccountBalance(
                user_id=user_id,
                restaurant_id=restaurant_id,
                balance=new_balance,
                stars_meal=new_meal,
                stars_drink=new_drink
            )
            db.add(account)
        else:
            account.balance = new_balance
            account.stars_meal = new_meal
            account.stars_drink = new_drink
            account.updated_at = datetime.utcnow()

        db.add(LedgerTransaction(
            user_id=user_id,
            restaurant_id=restaurant_id,
            kind=kind,
            balance_delta=delta.balance,
            stars_meal_delta=delta.stars_meal,
            stars_drink_delta=delta.stars_drink,
            idempotency_key=idempotency_key,
            operation_id=operation_id,
            counterparty_user_id=counterparty_user_id,
            note=note
        ))
        await db.flush()
        return account

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: int,
        restaurant_id: Optional[str] = None,
        limit: int = 100
    ) -> List[LedgerTransaction]:
        query = select(LedgerTransaction).where(LedgerTransaction.user_id == user_id)
        if restaurant_id:
            query = query.where(LedgerTransaction.restaurant_id == restaurant_id)
        query = query.order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc()).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def reconcile(
        self,
        db: AsyncSession,
        user_id: int,
        restaurant_id: str,
        as_of: Optional[datetime] = None
    ) -> ReconciliationReport:
        """
        Compare the stored balance with the sum of its transaction deltas.

        With `as_of`, only transactions created at or before that instant are
        summed and the stored side is left empty (there is no balance history
        to compare against).
        """
        query = select(
            func.coalesce(func.sum(LedgerTransaction.balance_delta), 0),
            func.coalesce(func.sum(LedgerTransaction.stars_meal_delta), 0),
            func.coalesce(func.sum(LedgerTransaction.stars_drink_delta), 0),
            func.count(LedgerTransaction.id),
        ).where(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.restaurant_id == restaurant_id
        )
        if as_of is not None:
            query = query.where(LedgerTransaction.created_at <= as_of)

        balance_sum, meal_sum, drink_sum, count = (await db.execute(query)).one()

        report = ReconciliationReport(
            user_id=user_id,
            restaurant_id=restaurant_id,
            as_of=as_of,
            computed={
                "balance": str(to_money(balance_sum)),
                "stars_meal": str(int(meal_sum)),
                "stars_drink": str(int(drink_sum)),
            },
            transaction_count=count
        )
        if as_of is not None:
            return report

        account = await self.get_balance(db, user_id, restaurant_id)
        report.stored = {
            "balance": str(to_money(account.balance)),
            "stars_meal": str(account.stars_meal),
            "stars_drink": str(account.stars_drink),
        }
        report.matches = report.stored == report.computed
        if not report.matches:
            logger.warning(
                "Ledger mismatch for user=%s restaurant=%s stored=%s computed=%s",
                user_id, restaurant_id, report.stored, report.computed
            )
        return report
