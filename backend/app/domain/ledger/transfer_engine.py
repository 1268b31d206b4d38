"""
Transfer Engine (Domain Logic).

Scan accrual, payment, gift and top-up on top of the ledger store. Each
operation is one atomic unit of work (retried on storage conflicts) and
publishes its notifications only after commit.
"""

import hashlib
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import (
    InsufficientFundsError,
    LocationMismatchError,
    NotFoundError,
    ValidationError,
)
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.ledger.geo import haversine_meters
from backend.app.domain.ledger.groups import PaymentTarget, resolve_target, group_of, group_restaurant_ids
from backend.app.domain.ledger.ledger_store import LedgerStore, BalanceDelta, available, to_money
from backend.app.models.account_balance import AccountBalance
from backend.app.models.ledger_enums import CurrencyType, ScanType, TransactionKind
from backend.app.models.notification import NotificationType
from backend.app.models.restaurant import Restaurant
from backend.app.models.topup_package import TopUpPackage
from backend.app.models.user import User
from backend.app.services.notification_service import NotificationEvent

logger = logging.getLogger("loyalty.transfers")

Amount = Union[Decimal, int]


@dataclass
class ScanCommand:
    restaurant_id: str
    scan_type: ScanType
    qr_code: str
    latitude: float
    longitude: float


@dataclass
class PaymentCommand:
    target_id: str
    currency_type: CurrencyType
    amount: Decimal


@dataclass
class GiftCommand:
    recipient_qr_code: str
    target_id: str
    currency_type: CurrencyType
    amount: Decimal


@dataclass
class TopUpCommand:
    user_qr_code: str
    package_id: int


@dataclass
class BalanceSnapshot:
    restaurant_id: str
    balance: Decimal
    stars_meal: int
    stars_drink: int

    @classmethod
    def of(cls, account: AccountBalance) -> "BalanceSnapshot":
        return cls(
            restaurant_id=account.restaurant_id,
            balance=to_money(account.balance),
            stars_meal=account.stars_meal,
            stars_drink=account.stars_drink
        )


@dataclass
class ScanResult:
    restaurant_id: str
    scan_type: ScanType
    stars_added: int
    replayed: bool
    balance: BalanceSnapshot


@dataclass
class TransferLeg:
    restaurant_id: str
    amount: Amount


@dataclass
class TransferResult:
    operation_id: str
    target_id: str
    is_group: bool
    currency_type: CurrencyType
    amount: Amount
    legs: List[TransferLeg] = field(default_factory=list)


@dataclass
class TopUpResult:
    operation_id: str
    restaurant_id: str
    user_id: int
    credited: Decimal
    balance: BalanceSnapshot


@dataclass
class BalanceSummary:
    target_id: str
    name: str
    is_group: bool
    restaurant_ids: List[str]
    balance: Decimal = Decimal("0.00")
    stars_meal: int = 0
    stars_drink: int = 0


def scan_idempotency_key(qr_code: str, user_id: int, at: datetime, window_seconds: int) -> str:
    """Same QR, same user, same time bucket -> same key."""
    bucket = math.floor(at.timestamp() / window_seconds)
    return hashlib.sha256(f"{qr_code}:{user_id}:{bucket}".encode()).hexdigest()


def _format_amount(currency_type: CurrencyType, amount: Amount) -> str:
    if currency_type == CurrencyType.BALANCE:
        return f"{to_money(amount)}"
    label = "meal stars" if currency_type == CurrencyType.STARS_MEAL else "drink stars"
    return f"{amount} {label}"


class TransferEngine:

    def __init__(
        self,
        uow: UnitOfWork,
        ledger: Optional[LedgerStore] = None,
        notifier=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.uow = uow
        self.ledger = ledger or LedgerStore()
        self.notifier = notifier
        self.settings = settings or default_settings
        self.clock = clock

    async def _notify(self, events: List[NotificationEvent]) -> None:
        if self.notifier is not None:
            await self.notifier.publish_all(events)

    @staticmethod
    def _validate_amount(currency_type: CurrencyType, amount) -> Amount:
        if amount is None or Decimal(str(amount)) <= 0:
            raise ValidationError("Amount must be greater than zero", details={"amount": str(amount)})
        delta = BalanceDelta.of(currency_type, amount)
        if delta.is_zero():
            raise ValidationError("Amount must be at least 0.01", details={"amount": str(amount)})
        if currency_type == CurrencyType.BALANCE:
            return delta.balance
        return delta.stars_meal or delta.stars_drink

    # --- Scan accrual ---

    async def record_scan(self, user_id: int, command: ScanCommand) -> ScanResult:
        """
        Credit stars for a QR scan at the restaurant.

        Validation (fails closed, nothing written):
        1. Restaurant exists
        2. QR code is the restaurant's code for the scan type
        3. User is within the allowed radius of the restaurant
        A repeated scan in the same time bucket returns the current balance.
        """
        stars = self.settings.scan_stars_per_scan
        key = scan_idempotency_key(
            command.qr_code, user_id, self.clock(), self.settings.scan_replay_window_seconds
        )

        async def operation(db: AsyncSession):
            restaurant = await db.get(Restaurant, command.restaurant_id)
            if not restaurant:
                raise NotFoundError("Restaurant", command.restaurant_id)

            expected = restaurant.qr_code_meal if command.scan_type == ScanType.MEAL else restaurant.qr_code_drink
            if command.qr_code != expected:
                raise ValidationError(
                    "QR code does not match this restaurant and scan type",
                    details={"scan_type": command.scan_type.value}
                )

            if restaurant.latitude is None or restaurant.longitude is None:
                raise ValidationError("Restaurant location is not configured")
            distance = haversine_meters(
                command.latitude, command.longitude, restaurant.latitude, restaurant.longitude
            )
            if distance > self.settings.scan_radius_meters:
                raise LocationMismatchError(distance, self.settings.scan_radius_meters)

            replayed = await self.ledger.find_transaction(db, key) is not None
            if command.scan_type == ScanType.MEAL:
                delta = BalanceDelta(stars_meal=stars)
            else:
                delta = BalanceDelta(stars_drink=stars)

            account = await self.ledger.apply_delta(
                db, user_id, restaurant.id, TransactionKind.SCAN_ACCRUAL, delta,
                idempotency_key=key, note=f"{command.scan_type.value} scan"
            )
            return ScanResult(
                restaurant_id=restaurant.id,
                scan_type=command.scan_type,
                stars_added=0 if replayed else stars,
                replayed=replayed,
                balance=BalanceSnapshot.of(account)
            ), restaurant.name

        result, restaurant_name = await self.uow.run(operation)

        if not result.replayed:
            logger.info("Scan accrued %d %s stars for user %s at %s", stars, command.scan_type.value, user_id, result.restaurant_id)
            await self._notify([NotificationEvent(
                user_id=user_id,
                title="Stars earned",
                message=f"You earned {stars} {command.scan_type.value} stars at {restaurant_name}",
                type=NotificationType.STARS,
                metadata={"restaurant_id": result.restaurant_id, "scan_type": command.scan_type.value, "stars": stars}
            )])
        return result

    # --- Debits ---

    async def _debit(
        self,
        db: AsyncSession,
        user_id: int,
        target: PaymentTarget,
        currency_type: CurrencyType,
        amount: Amount,
        kind: TransactionKind,
        operation_id: str,
        counterparty_user_id: Optional[int] = None,
    ) -> List[TransferLeg]:
        """
        Debit `amount` across the target's restaurants, largest holding first
        (ties by restaurant id), until exhausted.
        """
        accounts = await self.ledger.lock_balances(db, user_id, target.restaurant_ids)
        holdings = [
            (available(account, currency_type), restaurant_id)
            for restaurant_id, account in accounts.items()
            if available(account, currency_type) > 0
        ]
        holdings.sort(key=lambda h: (-h[0], h[1]))

        total = sum(h[0] for h in holdings)
        if total < amount:
            raise InsufficientFundsError(
                details={
                    "target_id": target.target_id,
                    "currency_type": currency_type.value,
                    "available": str(total),
                    "requested": str(amount),
                }
            )

        legs = []
        remaining = amount
        for holding, restaurant_id in holdings:
            if remaining <= 0:
                break
            take = min(holding, remaining)
            await self.ledger.apply_delta(
                db, user_id, restaurant_id, kind,
                BalanceDelta.of(currency_type, take).negated(),
                operation_id=operation_id,
                counterparty_user_id=counterparty_user_id
            )
            legs.append(TransferLeg(restaurant_id=restaurant_id, amount=take))
            remaining -= take
        return legs

    async def pay(self, user_id: int, command: PaymentCommand) -> TransferResult:
        amount = self._validate_amount(command.currency_type, command.amount)
        operation_id = str(uuid.uuid4())

        async def operation(db: AsyncSession):
            target = await resolve_target(db, command.target_id)
            legs = await self._debit(
                db, user_id, target, command.currency_type, amount,
                TransactionKind.PAYMENT_DEBIT, operation_id
            )
            return target, legs

        target, legs = await self.uow.run(operation)
        logger.info("Payment %s: user %s paid %s at %s", operation_id, user_id, amount, target.target_id)

        shown = _format_amount(command.currency_type, amount)
        metadata = {
            "operation_id": operation_id,
            "target_id": target.target_id,
            "currency_type": command.currency_type.value,
            "amount": str(amount),
        }
        await self._notify([
            NotificationEvent(
                user_id=user_id,
                title="Payment completed",
                message=f"You paid {shown} at {target.name}",
                type=NotificationType.PAYMENT,
                metadata=metadata
            ),
            NotificationEvent(
                user_id=target.owner_user_id,
                title="Payment received",
                message=f"A customer paid {shown} at {target.name}",
                type=NotificationType.PAYMENT,
                metadata=metadata
            ),
        ])
        return TransferResult(
            operation_id=operation_id,
            target_id=target.target_id,
            is_group=target.is_group,
            currency_type=command.currency_type,
            amount=amount,
            legs=legs
        )

    async def gift(self, sender_user_id: int, command: GiftCommand) -> TransferResult:
        """
        Move value from sender to recipient at the same restaurant(s).

        The sender is debited exactly like a payment; each debit leg is
        credited to the recipient at the same restaurant. Both sides commit
        together or not at all.
        """
        amount = self._validate_amount(command.currency_type, command.amount)
        operation_id = str(uuid.uuid4())

        async def operation(db: AsyncSession):
            result = await db.execute(select(User).where(User.qr_code == command.recipient_qr_code))
            recipient = result.scalar_one_or_none()
            if not recipient:
                raise NotFoundError("Recipient")
            if recipient.id == sender_user_id:
                raise ValidationError("You cannot send a gift to yourself")

            target = await resolve_target(db, command.target_id)
            legs = await self._debit(
                db, sender_user_id, target, command.currency_type, amount,
                TransactionKind.GIFT_SEND, operation_id, counterparty_user_id=recipient.id
            )
            for leg in legs:
                await self.ledger.apply_delta(
                    db, recipient.id, leg.restaurant_id, TransactionKind.GIFT_RECEIVE,
                    BalanceDelta.of(command.currency_type, leg.amount),
                    operation_id=operation_id,
                    counterparty_user_id=sender_user_id
                )
            return target, legs, recipient.id

        target, legs, recipient_id = await self.uow.run(operation)
        logger.info("Gift %s: user %s sent %s to user %s", operation_id, sender_user_id, amount, recipient_id)

        shown = _format_amount(command.currency_type, amount)
        metadata = {
            "operation_id": operation_id,
            "target_id": target.target_id,
            "currency_type": command.currency_type.value,
            "amount": str(amount),
        }
        await self._notify([
            NotificationEvent(
                user_id=sender_user_id,
                title="Gift sent",
                message=f"You sent {shown} at {target.name}",
                type=NotificationType.GIFT,
                metadata=metadata
            ),
            NotificationEvent(
                user_id=recipient_id,
                title="Gift received",
                message=f"You received {shown} at {target.name}",
                type=NotificationType.GIFT,
                metadata=metadata
            ),
        ])
        return TransferResult(
            operation_id=operation_id,
            target_id=target.target_id,
            is_group=target.is_group,
            currency_type=command.currency_type,
            amount=amount,
            legs=legs
        )

    # --- Top-up ---

    async def top_up(self, owner_user_id: int, command: TopUpCommand) -> TopUpResult:
        """Credit a top-up package (amount + bonus) to a customer found by QR code."""
        operation_id = str(uuid.uuid4())

        async def operation(db: AsyncSession):
            result = await db.execute(
                select(Restaurant).where(Restaurant.owner_id == owner_user_id).order_by(Restaurant.created_at)
            )
            restaurant = result.scalars().first()
            if not restaurant:
                raise NotFoundError("Restaurant")

            package = await db.get(TopUpPackage, command.package_id)
            if not package or package.restaurant_id != restaurant.id or not package.is_active:
                raise ValidationError(
                    "Top-up package is not available for this restaurant",
                    details={"package_id": command.package_id}
                )

            result = await db.execute(select(User).where(User.qr_code == command.user_qr_code))
            user = result.scalar_one_or_none()
            if not user:
                raise NotFoundError("User")

            credited = to_money(to_money(package.amount) + to_money(package.bonus))
            account = await self.ledger.apply_delta(
                db, user.id, restaurant.id, TransactionKind.TOPUP,
                BalanceDelta(balance=credited),
                operation_id=operation_id,
                note=f"Top-up package {package.id}"
            )
            return TopUpResult(
                operation_id=operation_id,
                restaurant_id=restaurant.id,
                user_id=user.id,
                credited=credited,
                balance=BalanceSnapshot.of(account)
            ), restaurant.name

        result, restaurant_name = await self.uow.run(operation)
        logger.info("Top-up %s: %s credited to user %s at %s", operation_id, result.credited, result.user_id, result.restaurant_id)

        await self._notify([NotificationEvent(
            user_id=result.user_id,
            title="Balance topped up",
            message=f"{result.credited} was added to your balance at {restaurant_name}",
            type=NotificationType.TOPUP,
            metadata={"operation_id": operation_id, "restaurant_id": result.restaurant_id, "amount": str(result.credited)}
        )])
        return result

    # --- Reads ---

    async def list_balances(self, user_id: int) -> List[BalanceSummary]:
        """Non-zero balances, rolled up per group for grouped restaurants."""
        async with self.uow.atomic() as db:
            result = await db.execute(
                select(AccountBalance, Restaurant)
                .join(Restaurant, Restaurant.id == AccountBalance.restaurant_id)
                .where(AccountBalance.user_id == user_id)
                .order_by(AccountBalance.restaurant_id)
            )
            summaries = {}
            for account, restaurant in result.all():
                if to_money(account.balance) == 0 and not account.stars_meal and not account.stars_drink:
                    continue
                group = await group_of(db, restaurant.id)
                if group:
                    key = group.id
                    if key not in summaries:
                        summaries[key] = BalanceSummary(
                            target_id=group.id,
                            name=group.name,
                            is_group=True,
                            restaurant_ids=await group_restaurant_ids(db, group)
                        )
                else:
                    key = restaurant.id
                    summaries[key] = BalanceSummary(
                        target_id=restaurant.id,
                        name=restaurant.name,
                        is_group=False,
                        restaurant_ids=[restaurant.id]
                    )
                summary = summaries[key]
                summary.balance = to_money(summary.balance + to_money(account.balance))
                summary.stars_meal += account.stars_meal
                summary.stars_drink += account.stars_drink
            return list(summaries.values())
