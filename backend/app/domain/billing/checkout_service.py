"""
Checkout Service (Domain Logic).

Opens a provider checkout for a plan and records the pending Payment and
Subscription the reconciler later activates.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import NotFoundError, ValidationError
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.billing.gateways import CheckoutRequest, PaymentGateway
from backend.app.models.billing_enums import (
    PaymentProvider,
    PaymentStatus,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from backend.app.models.payment import Payment
from backend.app.models.plan import Plan
from backend.app.models.restaurant import Restaurant
from backend.app.models.subscription import Subscription

logger = logging.getLogger("loyalty.checkout")


@dataclass
class CheckoutCommand:
    plan_id: int
    provider: PaymentProvider = PaymentProvider.STRIPE
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class CheckoutSessionResult:
    provider: PaymentProvider
    handle: str
    url: str
    payment_id: int
    subscription_id: int


class CheckoutService:

    def __init__(
        self,
        uow: UnitOfWork,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.uow = uow
        self.gateways = gateways
        self.settings = settings or default_settings
        self.clock = clock

    def _default_urls(self, provider: PaymentProvider):
        base = f"{self.settings.app_base_url}/dashboard/subscription"
        if provider == PaymentProvider.PAYPAL:
            success = f"{base}?status=success&provider=paypal"
        else:
            success = f"{base}?status=success&session_id={{CHECKOUT_SESSION_ID}}"
        return success, f"{base}?status=cancel"

    async def _check_renewal_window(self, db: AsyncSession, restaurant_id: str, plan_id: int, now: datetime) -> None:
        result = await db.execute(
            select(Subscription).where(
                Subscription.restaurant_id == restaurant_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date >= now
            ).order_by(Subscription.end_date.desc())
        )
        current = result.scalars().first()
        if current is None:
            return
        window = self.settings.renewal_window_days
        days_until_expiry = math.ceil((current.end_date - now).total_seconds() / 86400)
        if days_until_expiry > window:
            raise ValidationError(
                f"Renewal is only available in the last {window} days. "
                f"You can renew in {days_until_expiry - window} days.",
                details={"subscription_id": current.id, "days_until_renewal": days_until_expiry - window}
            )

    async def create_checkout(self, owner_user_id: int, command: CheckoutCommand) -> CheckoutSessionResult:
        """
        Flow:
        1. Validate restaurant, plan and renewal window (read only)
        2. Create the provider checkout (no transaction open)
        3. Persist Payment(created) + Subscription(PENDING) atomically
        """
        now = self.clock()
        gateway = self.gateways.get(command.provider)
        if gateway is None:
            raise ValidationError(f"Unsupported payment provider: {command.provider}")

        # 1. Validation
        async with self.uow.atomic() as db:
            result = await db.execute(
                select(Restaurant).where(Restaurant.owner_id == owner_user_id).order_by(Restaurant.created_at)
            )
            restaurant = result.scalars().first()
            if not restaurant:
                raise NotFoundError("Restaurant")

            plan = await db.get(Plan, command.plan_id)
            if not plan or not plan.is_active:
                raise NotFoundError("Plan", command.plan_id)
            if plan.is_free:
                raise ValidationError("Free plans cannot be purchased")

            await self._check_renewal_window(db, restaurant.id, plan.id, now)

            default_success, default_cancel = self._default_urls(command.provider)
            request = CheckoutRequest(
                restaurant_id=restaurant.id,
                plan_id=plan.id,
                title=plan.title,
                amount=Decimal(plan.price),
                currency=plan.currency or self.settings.default_currency,
                success_url=command.success_url or default_success,
                cancel_url=command.cancel_url or default_cancel,
                stripe_price_id=plan.stripe_price_id,
                customer_id=restaurant.stripe_customer_id,
            )
            duration = plan.duration

        # 2. Provider
        session = await gateway.create_checkout(request)

        # 3. Persist
        async def persist(db: AsyncSession):
            if session.customer_id:
                restaurant = await db.get(Restaurant, request.restaurant_id)
                if restaurant.stripe_customer_id != session.customer_id:
                    restaurant.stripe_customer_id = session.customer_id

            payment = Payment(
                user_id=owner_user_id,
                restaurant_id=request.restaurant_id,
                provider=command.provider,
                checkout_session_id=session.handle,
                transaction_id=session.handle,
                status=PaymentStatus.CREATED,
                amount=request.amount,
                currency=request.currency,
                payment_method="PayPal" if command.provider == PaymentProvider.PAYPAL else "stripe",
            )
            db.add(payment)
            await db.flush()

            subscription = Subscription(
                restaurant_id=request.restaurant_id,
                plan_id=request.plan_id,
                start_date=now,
                end_date=now + timedelta(days=duration),
                status=SubscriptionStatus.PENDING,
                payment_id=payment.id,
                payment_status=SubscriptionPaymentStatus.UNPAID,
            )
            db.add(subscription)
            await db.flush()
            return payment.id, subscription.id

        payment_id, subscription_id = await self.uow.run(persist)
        logger.info(
            "Checkout %s (%s) opened for restaurant %s plan %s",
            session.handle, command.provider.value, request.restaurant_id, request.plan_id
        )
        return CheckoutSessionResult(
            provider=command.provider,
            handle=session.handle,
            url=session.url,
            payment_id=payment_id,
            subscription_id=subscription_id
        )
