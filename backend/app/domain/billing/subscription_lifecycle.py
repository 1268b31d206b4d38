"""
Subscription Lifecycle (Domain Logic).

Expiry sweeps, restaurant flag recomputation and admin cancellation.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import NotFoundError, ValidationError
from backend.app.db.unit_of_work import UnitOfWork, lock_for_update
from backend.app.models.billing_enums import SubscriptionStatus
from backend.app.models.notification import NotificationType
from backend.app.models.restaurant import Restaurant
from backend.app.models.subscription import Subscription
from backend.app.services.notification_service import NotificationEvent

logger = logging.getLogger("loyalty.lifecycle")


async def has_active_subscription(db: AsyncSession, restaurant_id: str, now: datetime) -> bool:
    result = await db.execute(
        select(
            exists().where(
                Subscription.restaurant_id == restaurant_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.start_date <= now,
                Subscription.end_date >= now
            )
        )
    )
    return bool(result.scalar())


class SubscriptionLifecycle:

    def __init__(
        self,
        uow: UnitOfWork,
        notifier=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.uow = uow
        self.notifier = notifier
        self.settings = settings or default_settings
        self.clock = clock

    async def expire_due_subscriptions(self) -> int:
        """ACTIVE subscriptions whose end date has passed become EXPIRED."""
        now = self.clock()

        async def operation(db: AsyncSession):
            result = await db.execute(
                lock_for_update(
                    select(Subscription).where(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        Subscription.end_date < now
                    )
                )
            )
            expired = result.scalars().all()
            for subscription in expired:
                subscription.status = SubscriptionStatus.EXPIRED
                subscription.updated_at = now
            return len(expired)

        count = await self.uow.run(operation)
        if count:
            logger.info("Expired %d subscriptions", count)
        return count

    async def expire_abandoned_checkouts(self) -> int:
        """
        PENDING subscriptions older than the configured TTL become EXPIRED.

        Their payments stay `created`; a late confirmation still finds them.
        Disabled when no TTL is configured.
        """
        ttl_hours = self.settings.pending_subscription_ttl_hours
        if not ttl_hours:
            return 0
        cutoff = self.clock() - timedelta(hours=ttl_hours)

        async def operation(db: AsyncSession):
            result = await db.execute(
                lock_for_update(
                    select(Subscription).where(
                        Subscription.status == SubscriptionStatus.PENDING,
                        Subscription.created_at < cutoff
                    )
                )
            )
            abandoned = result.scalars().all()
            for subscription in abandoned:
                subscription.status = SubscriptionStatus.EXPIRED
                subscription.updated_at = self.clock()
            return len(abandoned)

        count = await self.uow.run(operation)
        if count:
            logger.info("Expired %d abandoned checkouts", count)
        return count

    async def refresh_restaurant_flags(self) -> int:
        """Recompute `is_subscription_active` for every restaurant. Returns how many changed."""
        now = self.clock()

        async def operation(db: AsyncSession):
            result = await db.execute(select(Restaurant).order_by(Restaurant.id))
            changed = 0
            for restaurant in result.scalars().all():
                active = await has_active_subscription(db, restaurant.id, now)
                if restaurant.is_subscription_active != active:
                    restaurant.is_subscription_active = active
                    restaurant.updated_at = now
                    changed += 1
            return changed

        return await self.uow.run(operation)

    async def cancel_subscription(self, subscription_id: int, reason: Optional[str] = None) -> Subscription:
        now = self.clock()

        async def operation(db: AsyncSession):
            result = await db.execute(
                lock_for_update(select(Subscription).where(Subscription.id == subscription_id))
            )
            subscription = result.scalar_one_or_none()
            if not subscription:
                raise NotFoundError("Subscription", subscription_id)

            status = subscription.effective_status(now)
            if status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED):
                raise ValidationError(
                    f"Cannot cancel a subscription that is {status.value}",
                    details={"subscription_id": subscription_id, "status": status.value}
                )

            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancel_reason = reason
            subscription.updated_at = now

            result = await db.execute(
                lock_for_update(select(Restaurant).where(Restaurant.id == subscription.restaurant_id))
            )
            restaurant = result.scalar_one()
            await db.flush()
            restaurant.is_subscription_active = await has_active_subscription(db, restaurant.id, now)
            return subscription, restaurant.owner_id

        subscription, owner_id = await self.uow.run(operation)
        logger.info("Subscription %s cancelled (%s)", subscription_id, reason or "no reason")

        if self.notifier is not None:
            await self.notifier.publish(NotificationEvent(
                user_id=owner_id,
                title="Subscription cancelled",
                message=f"Your subscription was cancelled{': ' + reason if reason else ''}",
                type=NotificationType.SUBSCRIPTION,
                metadata={"subscription_id": subscription_id}
            ))
        return subscription

    async def run_sweep(self) -> Dict[str, int]:
        """All lifecycle sweeps in order; for an admin trigger or a cron job."""
        expired = await self.expire_due_subscriptions()
        abandoned = await self.expire_abandoned_checkouts()
        flags = await self.refresh_restaurant_flags()
        return {
            "expired_subscriptions": expired,
            "expired_checkouts": abandoned,
            "restaurant_flags_changed": flags,
        }
