"""
Service wiring for the API layer.

Every domain service is built from overridable FastAPI dependencies so
tests can swap the session factory, Redis and the payment gateways.
"""

from typing import Dict

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.config import settings
from backend.app.core.redis_client import get_redis
from backend.app.db.session import get_session_factory
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.billing.checkout_service import CheckoutService
from backend.app.domain.billing.gateways import PaymentGateway, build_gateways
from backend.app.domain.billing.subscription_lifecycle import SubscriptionLifecycle
from backend.app.domain.billing.subscription_reconciler import SubscriptionReconciler
from backend.app.domain.ledger.ledger_store import LedgerStore
from backend.app.domain.ledger.transfer_engine import TransferEngine
from backend.app.models.billing_enums import PaymentProvider
from backend.app.services.notification_service import DatabaseNotificationSink


def get_uow(session_factory: async_sessionmaker = Depends(get_session_factory)) -> UnitOfWork:
    return UnitOfWork(session_factory)


def get_notifier(session_factory: async_sessionmaker = Depends(get_session_factory)) -> DatabaseNotificationSink:
    return DatabaseNotificationSink(session_factory)


async def get_gateways(redis=Depends(get_redis)) -> Dict[PaymentProvider, PaymentGateway]:
    return build_gateways(redis=redis, settings=settings)


def get_ledger_store() -> LedgerStore:
    return LedgerStore()


def get_transfer_engine(
    uow: UnitOfWork = Depends(get_uow),
    ledger: LedgerStore = Depends(get_ledger_store),
    notifier: DatabaseNotificationSink = Depends(get_notifier),
) -> TransferEngine:
    return TransferEngine(uow, ledger=ledger, notifier=notifier, settings=settings)


def get_reconciler(
    uow: UnitOfWork = Depends(get_uow),
    gateways: Dict[PaymentProvider, PaymentGateway] = Depends(get_gateways),
    notifier: DatabaseNotificationSink = Depends(get_notifier),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(uow, gateways, notifier=notifier)


def get_checkout_service(
    uow: UnitOfWork = Depends(get_uow),
    gateways: Dict[PaymentProvider, PaymentGateway] = Depends(get_gateways),
) -> CheckoutService:
    return CheckoutService(uow, gateways, settings=settings)


def get_lifecycle(
    uow: UnitOfWork = Depends(get_uow),
    notifier: DatabaseNotificationSink = Depends(get_notifier),
) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(uow, notifier=notifier, settings=settings)
