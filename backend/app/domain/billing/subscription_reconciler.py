"""
Subscription Reconciler (Domain Logic).

Turns checkout confirmations and provider webhook events into at most one
ACTIVE subscription per (restaurant, plan) and exactly one invoice per
provider invoice id, regardless of duplicate or out-of-order delivery.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import NotFoundError, ValidationError
from backend.app.db.unit_of_work import UnitOfWork, lock_for_update
from backend.app.domain.billing.gateways import (
    CheckoutConfirmation,
    InvoiceNotice,
    PaymentGateway,
    StripeGateway,
    period_or_default,
)
from backend.app.models.billing_enums import (
    InvoiceStatus,
    PaymentProvider,
    PaymentStatus,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from backend.app.models.invoice import Invoice
from backend.app.models.notification import NotificationType
from backend.app.models.payment import Payment
from backend.app.models.plan import Plan
from backend.app.models.restaurant import Restaurant
from backend.app.models.subscription import Subscription
from backend.app.models.webhook_event import WebhookEvent
from backend.app.services.notification_service import NotificationEvent

logger = logging.getLogger("loyalty.reconciler")

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass
class ActivationResult:
    subscription_id: int
    payment_id: int
    invoice_id: int
    renewed: bool
    replayed: bool
    status: SubscriptionStatus
    end_date: datetime


def manual_invoice_key(payment_id: int) -> str:
    return f"manual_{payment_id}"


async def upsert_invoice(
    db: AsyncSession,
    provider_invoice_id: str,
    create: Mapping[str, Any],
    update: Mapping[str, Any],
) -> Invoice:
    """
    Insert-or-update keyed on the provider invoice id.

    A concurrent first insert loses on the unique key and the unit of work
    retries the whole operation, which then takes the update branch.
    """
    result = await db.execute(
        lock_for_update(select(Invoice).where(Invoice.provider_invoice_id == provider_invoice_id))
    )
    invoice = result.scalar_one_or_none()
    if invoice is None:
        invoice = Invoice(provider_invoice_id=provider_invoice_id, **create)
        db.add(invoice)
    else:
        for key, value in update.items():
            setattr(invoice, key, value)
        invoice.updated_at = datetime.utcnow()
    await db.flush()
    return invoice


class SubscriptionReconciler:

    def __init__(
        self,
        uow: UnitOfWork,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        notifier=None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.uow = uow
        self.gateways = gateways
        self.notifier = notifier
        self.clock = clock

    async def _notify(self, events: List[NotificationEvent]) -> None:
        if self.notifier is not None and events:
            await self.notifier.publish_all(events)

    @property
    def stripe(self) -> StripeGateway:
        return self.gateways[PaymentProvider.STRIPE]

    # --- Checkout confirmation ---

    async def confirm_payment(self, payment_handle: str, owner_user_id: Optional[int] = None) -> ActivationResult:
        """
        Confirm a checkout with its provider, then activate it.

        The provider call runs before any local transaction is opened. A
        payment that already succeeded is not sent to the provider again.
        """
        async with self.uow.atomic() as db:
            result = await db.execute(select(Payment).where(Payment.checkout_session_id == payment_handle))
            payment = result.scalar_one_or_none()
            if not payment or (owner_user_id is not None and payment.user_id != owner_user_id):
                raise NotFoundError("Payment", payment_handle)
            provider, status = payment.provider, payment.status

        if status == PaymentStatus.SUCCEEDED:
            confirmation = CheckoutConfirmation(handle=payment_handle)
        else:
            gateway = self.gateways.get(provider)
            if gateway is None:
                raise ValidationError(f"Payments through {provider.value} cannot be confirmed online")
            confirmation = await gateway.confirm_checkout(payment_handle)

        return await self.activate(confirmation)

    async def activate(self, confirmation: CheckoutConfirmation) -> ActivationResult:
        async def operation(db: AsyncSession):
            return await self._activate(db, confirmation)

        result, events = await self.uow.run(operation)
        await self._notify(events)
        return result

    async def _activate(
        self,
        db: AsyncSession,
        confirmation: CheckoutConfirmation,
    ) -> Tuple[ActivationResult, List[NotificationEvent]]:
        """
        Flow:
        1. Lock the Payment by provider handle
        2. Replay of a succeeded payment -> refresh its invoice only
        3. Find the pending Subscription and lock its restaurant
           A CANCELLED pending row -> settle payment and invoice, activate nothing
        4. Renewal: extend the other ACTIVE (restaurant, plan) row and drop the pending one
           Otherwise: activate the pending row
        5. Payment -> succeeded, invoice upsert, restaurant flag
        """
        now = self.clock()

        # 1. Payment
        result = await db.execute(
            lock_for_update(select(Payment).where(Payment.checkout_session_id == confirmation.handle))
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", confirmation.handle)

        # 2. Replay
        if payment.status == PaymentStatus.SUCCEEDED:
            return await self._replay(db, payment, confirmation), []

        # 3. Subscription + restaurant
        result = await db.execute(select(Subscription).where(Subscription.payment_id == payment.id))
        pending = result.scalar_one_or_none()
        if not pending:
            raise NotFoundError("Subscription for payment", payment.id)

        result = await db.execute(
            lock_for_update(select(Restaurant).where(Restaurant.id == pending.restaurant_id))
        )
        restaurant = result.scalar_one()
        plan = await db.get(Plan, pending.plan_id)

        payment_method = confirmation.payment_method or payment.payment_method

        # A checkout cancelled while pending is paid for but never activated
        if pending.status == SubscriptionStatus.CANCELLED:
            invoice = await self._settle_payment(
                db, payment, pending, plan, confirmation, payment_method,
                pending.start_date, pending.end_date, now
            )
            logger.warning(
                "Payment %s succeeded for cancelled subscription %s; not activated",
                payment.id, pending.id
            )
            return ActivationResult(
                subscription_id=pending.id,
                payment_id=payment.id,
                invoice_id=invoice.id,
                renewed=False,
                replayed=False,
                status=pending.status,
                end_date=pending.end_date
            ), []

        result = await db.execute(
            select(Subscription).where(
                Subscription.restaurant_id == pending.restaurant_id,
                Subscription.plan_id == pending.plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date >= now,
                Subscription.id != pending.id
            ).order_by(Subscription.end_date.desc())
        )
        existing = result.scalars().first()

        # 4. Renewal collapse or first activation
        if existing is not None:
            period_start = existing.end_date
            existing.end_date = existing.end_date + timedelta(days=plan.duration)
            existing.status = SubscriptionStatus.ACTIVE
            existing.payment_status = SubscriptionPaymentStatus.PAID
            existing.payment_method = payment_method
            if confirmation.provider_subscription_id:
                existing.provider_subscription_id = confirmation.provider_subscription_id
            if confirmation.period_start:
                existing.current_period_start = confirmation.period_start
            if confirmation.period_end:
                existing.current_period_end = confirmation.period_end
            existing.updated_at = now
            await db.delete(pending)
            winner = existing
            renewed = True
            period_end = existing.end_date
        else:
            start, end = period_or_default(confirmation.period_start, confirmation.period_end, now, plan.duration)
            pending.status = SubscriptionStatus.ACTIVE
            pending.payment_status = SubscriptionPaymentStatus.PAID
            pending.payment_method = payment_method
            pending.start_date = start
            pending.end_date = end
            pending.provider_subscription_id = confirmation.provider_subscription_id
            pending.current_period_start = confirmation.period_start
            pending.current_period_end = confirmation.period_end
            pending.updated_at = now
            winner = pending
            renewed = False
            period_start, period_end = start, end

        # 5. Payment, invoice, restaurant
        invoice = await self._settle_payment(
            db, payment, winner, plan, confirmation, payment_method, period_start, period_end, now
        )
        restaurant.is_subscription_active = True
        restaurant.updated_at = now
        await db.flush()

        logger.info(
            "Payment %s activated subscription %s (renewed=%s) until %s",
            payment.id, winner.id, renewed, winner.end_date
        )
        events = [NotificationEvent(
            user_id=restaurant.owner_id,
            title="Subscription renewed" if renewed else "Subscription activated",
            message=f"Your {plan.title} subscription is active until {winner.end_date:%Y-%m-%d}",
            type=NotificationType.SUBSCRIPTION,
            metadata={"subscription_id": winner.id, "plan_id": plan.id, "renewed": renewed}
        )]
        return ActivationResult(
            subscription_id=winner.id,
            payment_id=payment.id,
            invoice_id=invoice.id,
            renewed=renewed,
            replayed=False,
            status=winner.status,
            end_date=winner.end_date
        ), events

    async def _settle_payment(
        self,
        db: AsyncSession,
        payment: Payment,
        subscription: Subscription,
        plan: Plan,
        confirmation: CheckoutConfirmation,
        payment_method: Optional[str],
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> Invoice:
        """Mark the payment succeeded and upsert its invoice against `subscription`."""
        payment.status = PaymentStatus.SUCCEEDED
        payment.payment_method = payment_method
        payment.updated_at = now

        price = Decimal(plan.price)
        return await upsert_invoice(
            db,
            confirmation.provider_invoice_id or manual_invoice_key(payment.id),
            create={
                "restaurant_id": subscription.restaurant_id,
                "subscription_id": subscription.id,
                "payment_id": payment.id,
                "hosted_invoice_url": confirmation.hosted_invoice_url,
                "pdf_url": confirmation.pdf_url,
                "amount_due": price,
                "amount_paid": price,
                "currency": plan.currency,
                "status": InvoiceStatus.PAID,
                "payment_method": payment_method,
                "period_start": period_start,
                "period_end": period_end,
            },
            update={
                "subscription_id": subscription.id,
                "payment_id": payment.id,
                "status": InvoiceStatus.PAID,
                "amount_paid": price,
                "payment_method": payment_method,
                "period_start": period_start,
                "period_end": period_end,
            },
        )

    async def _replay(self, db: AsyncSession, payment: Payment, confirmation: CheckoutConfirmation) -> ActivationResult:
        """A repeated confirmation for a succeeded payment: refresh the invoice, extend nothing."""
        result = await db.execute(
            lock_for_update(select(Invoice).where(Invoice.payment_id == payment.id).order_by(Invoice.id))
        )
        invoice = result.scalars().first()

        subscription = None
        if invoice is not None and invoice.subscription_id is not None:
            subscription = await db.get(Subscription, invoice.subscription_id)
        if subscription is None:
            result = await db.execute(select(Subscription).where(Subscription.payment_id == payment.id))
            subscription = result.scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Subscription for payment", payment.id)

        if invoice is None:
            plan = await db.get(Plan, subscription.plan_id)
            invoice = await upsert_invoice(
                db,
                confirmation.provider_invoice_id or manual_invoice_key(payment.id),
                create={
                    "restaurant_id": subscription.restaurant_id,
                    "subscription_id": subscription.id,
                    "payment_id": payment.id,
                    "amount_due": Decimal(plan.price),
                    "amount_paid": Decimal(plan.price),
                    "currency": plan.currency,
                    "status": InvoiceStatus.PAID,
                    "payment_method": payment.payment_method,
                    "period_start": subscription.start_date,
                    "period_end": subscription.end_date,
                },
                update={},
            )
        else:
            invoice.status = InvoiceStatus.PAID
            if confirmation.hosted_invoice_url:
                invoice.hosted_invoice_url = confirmation.hosted_invoice_url
            if confirmation.pdf_url:
                invoice.pdf_url = confirmation.pdf_url
            invoice.updated_at = self.clock()
            await db.flush()

        logger.info("Confirmation replay for payment %s, subscription %s unchanged", payment.id, subscription.id)
        return ActivationResult(
            subscription_id=subscription.id,
            payment_id=payment.id,
            invoice_id=invoice.id,
            renewed=False,
            replayed=True,
            status=subscription.status,
            end_date=subscription.end_date
        )

    # --- Webhooks ---

    async def _already_processed(self, event_id: str) -> bool:
        async with self.uow.atomic() as db:
            result = await db.execute(select(WebhookEvent.id).where(WebhookEvent.provider_event_id == event_id))
            return result.scalar_one_or_none() is not None

    @staticmethod
    async def _claim_event(db: AsyncSession, event_id: str, event_type: str) -> bool:
        """Record the event inside the processing transaction. False if it was seen before."""
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.provider_event_id == event_id))
        if result.scalar_one_or_none() is not None:
            return False
        db.add(WebhookEvent(provider_event_id=event_id, event_type=event_type))
        await db.flush()
        return True

    async def handle_webhook_event(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify, de-duplicate and apply one Stripe webhook delivery.

        Signature verification happens on the raw bytes before anything is
        parsed or read from the store. Provider lookups run before the
        transaction; the event id is recorded in the same transaction as the
        event's mutations.
        """
        event = self.stripe.verify_webhook(raw_body, signature_header)
        event_id = event.get("id")
        event_type = event.get("type")
        payload = (event.get("data") or {}).get("object") or {}
        if not event_id or not event_type:
            raise ValidationError("Webhook event is missing its id or type")

        response = {"received": True, "event_id": event_id, "type": event_type, "duplicate": False, "handled": False}

        if await self._already_processed(event_id):
            logger.info("Duplicate webhook event %s (%s) acknowledged", event_id, event_type)
            response["duplicate"] = True
            return response

        confirmation = None
        notice = None
        if event_type == CHECKOUT_COMPLETED:
            confirmation = await self.stripe.describe_checkout_session(payload)
        elif event_type in (INVOICE_PAID, INVOICE_PAYMENT_FAILED):
            notice = await self.stripe.describe_invoice(payload)

        async def operation(db: AsyncSession):
            if not await self._claim_event(db, event_id, event_type):
                return None, []
            if event_type == CHECKOUT_COMPLETED:
                return await self._on_checkout_completed(db, confirmation)
            if event_type == INVOICE_PAID:
                return await self._on_invoice_paid(db, notice)
            if event_type == INVOICE_PAYMENT_FAILED:
                return await self._on_invoice_failed(db, notice)
            logger.info("Ignoring webhook event type %s", event_type)
            return False, []

        handled, events = await self.uow.run(operation)
        if handled is None:
            logger.info("Duplicate webhook event %s (%s) acknowledged", event_id, event_type)
            response["duplicate"] = True
            return response

        response["handled"] = handled
        await self._notify(events)
        return response

    async def _on_checkout_completed(self, db: AsyncSession, confirmation: CheckoutConfirmation):
        try:
            _, events = await self._activate(db, confirmation)
        except NotFoundError as exc:
            # Webhooks are acknowledged; the provider must not retry an unknown checkout
            logger.warning("Checkout %s not reconciled: %s", confirmation.handle, exc.message)
            return False, []
        return True, events

    async def _subscription_for(self, db: AsyncSession, notice: InvoiceNotice) -> Optional[Subscription]:
        if not notice.subscription_id:
            logger.warning("Invoice %s has no provider subscription", notice.invoice_id)
            return None
        result = await db.execute(
            lock_for_update(
                select(Subscription).where(Subscription.provider_subscription_id == notice.subscription_id)
            ).order_by(Subscription.id)
        )
        subscription = result.scalars().first()
        if subscription is None:
            logger.warning("No subscription for provider subscription %s", notice.subscription_id)
        return subscription

    async def _on_invoice_paid(self, db: AsyncSession, notice: InvoiceNotice):
        subscription = await self._subscription_for(db, notice)
        if subscription is None:
            return False, []

        now = self.clock()
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.payment_status = SubscriptionPaymentStatus.PAID
        if notice.payment_method:
            subscription.payment_method = notice.payment_method
        if notice.period_start:
            subscription.current_period_start = notice.period_start
        if notice.period_end:
            subscription.current_period_end = notice.period_end
            if notice.period_end > subscription.end_date:
                subscription.end_date = notice.period_end
        subscription.updated_at = now

        period_start = notice.period_start or now
        period_end = notice.period_end or subscription.end_date
        await upsert_invoice(
            db,
            notice.invoice_id,
            create={
                "restaurant_id": subscription.restaurant_id,
                "subscription_id": subscription.id,
                "hosted_invoice_url": notice.hosted_invoice_url,
                "pdf_url": notice.pdf_url,
                "amount_due": notice.amount_due,
                "amount_paid": notice.amount_paid,
                "currency": notice.currency,
                "status": InvoiceStatus.PAID,
                "payment_method": notice.payment_method,
                "period_start": period_start,
                "period_end": period_end,
            },
            update={
                "status": InvoiceStatus.PAID,
                "amount_paid": notice.amount_paid,
                "payment_method": notice.payment_method,
            },
        )

        result = await db.execute(
            lock_for_update(select(Restaurant).where(Restaurant.id == subscription.restaurant_id))
        )
        restaurant = result.scalar_one()
        if subscription.end_date >= now:
            restaurant.is_subscription_active = True

        logger.info("Invoice %s paid for subscription %s", notice.invoice_id, subscription.id)
        return True, [NotificationEvent(
            user_id=restaurant.owner_id,
            title="Invoice paid",
            message=f"Your subscription is active until {subscription.end_date:%Y-%m-%d}",
            type=NotificationType.SUBSCRIPTION,
            metadata={"subscription_id": subscription.id, "invoice_id": notice.invoice_id}
        )]

    async def _on_invoice_failed(self, db: AsyncSession, notice: InvoiceNotice):
        """Failed renewal charge: mark unpaid and record a FAILED invoice. Status is left as is."""
        subscription = await self._subscription_for(db, notice)
        if subscription is None:
            return False, []

        subscription.payment_status = SubscriptionPaymentStatus.UNPAID
        subscription.updated_at = self.clock()
        await upsert_invoice(
            db,
            notice.invoice_id,
            create={
                "restaurant_id": subscription.restaurant_id,
                "subscription_id": subscription.id,
                "hosted_invoice_url": notice.hosted_invoice_url,
                "pdf_url": notice.pdf_url,
                "amount_due": notice.amount_due,
                "amount_paid": notice.amount_paid,
                "currency": notice.currency,
                "status": InvoiceStatus.FAILED,
            },
            update={"status": InvoiceStatus.FAILED},
        )

        restaurant = await db.get(Restaurant, subscription.restaurant_id)
        logger.warning("Invoice %s payment failed for subscription %s", notice.invoice_id, subscription.id)
        return True, [NotificationEvent(
            user_id=restaurant.owner_id,
            title="Subscription payment failed",
            message="We could not charge your payment method. Please update it to keep your subscription.",
            type=NotificationType.SUBSCRIPTION,
            metadata={"subscription_id": subscription.id, "invoice_id": notice.invoice_id}
        )]
