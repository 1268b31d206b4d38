"""
Failure Injection Tests.

Validates resilience against provider outages, storage conflicts and
notification delivery failures.
"""

import pytest
from datetime import datetime
from decimal import Decimal

import stripe
from sqlalchemy.exc import IntegrityError

from backend.app.core.exceptions import PaymentProviderError, SignatureVerificationError
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.billing.gateways import CheckoutRequest, StripeGateway
from backend.app.domain.ledger.transfer_engine import TransferEngine, ScanCommand
from backend.app.models.enums import UserRole
from backend.app.models.ledger_enums import ScanType
from backend.app.services.notification_service import DatabaseNotificationSink, NotificationEvent
from backend.tests.support import create_restaurant, create_user, test_settings


def checkout_request(**overrides):
    values = dict(
        restaurant_id="r-1",
        plan_id=1,
        title="Pro",
        amount=Decimal("29.90"),
        currency="EUR",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        stripe_price_id="price_pro",
    )
    values.update(overrides)
    return CheckoutRequest(**values)


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    async def failing_func():
        raise ValueError("Boom")

    # Fail 1
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    # Fail 2 (Threshold reached)
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    # Call 3 (Should be CircuitOpenError)
    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)


@pytest.mark.asyncio
async def test_circuit_breaker_recovers_after_timeout(mocker):
    cb = CircuitBreaker("recovering", failure_threshold=1, reset_timeout=10)

    async def failing_func():
        raise ValueError("Boom")

    async def ok_func():
        return "ok"

    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    mocker.patch("backend.app.core.reliability.time.time", return_value=cb.last_failure_time + 11)
    assert await cb.call(ok_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_stripe_errors_become_provider_errors():
    gateway = StripeGateway(settings=test_settings, breaker=CircuitBreaker("stripe-outage", failure_threshold=2))

    def unreachable(*args, **kwargs):
        raise stripe.APIConnectionError("network down")

    with pytest.raises(PaymentProviderError):
        await gateway._call(unreachable)
    with pytest.raises(PaymentProviderError):
        await gateway._call(unreachable)

    # Breaker is now open: the provider is not even called
    with pytest.raises(PaymentProviderError) as exc_info:
        await gateway._call(unreachable)
    assert exc_info.value.message == "Stripe is temporarily unavailable"
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_unconfigured_stripe_rejected():
    settings = test_settings.model_copy(update={"stripe_secret_key": None, "stripe_webhook_secret": None})
    gateway = StripeGateway(settings=settings, breaker=CircuitBreaker("stripe-unconfigured"))

    with pytest.raises(PaymentProviderError):
        await gateway.create_checkout(checkout_request())
    with pytest.raises(SignatureVerificationError):
        gateway.verify_webhook(b"{}", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_paypal_outage_maps_to_provider_error(paypal_gateway, paypal_sandbox):
    paypal_sandbox.fail_with = 503

    with pytest.raises(PaymentProviderError) as exc_info:
        await paypal_gateway.create_checkout(checkout_request())

    assert exc_info.value.details == {"provider": "paypal"}
    assert paypal_gateway.breaker.failures == 1


@pytest.mark.asyncio
async def test_unit_of_work_retries_conflicts(uow):
    calls = []

    async def operation(db):
        calls.append(len(calls))
        if len(calls) == 1:
            raise IntegrityError("INSERT INTO account_balances", {}, Exception("UNIQUE constraint failed"))
        return "done"

    assert await uow.run(operation) == "done"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unit_of_work_gives_up_after_attempts(session_factory):
    uow = UnitOfWork(session_factory, attempts=2, backoff_base=0)

    async def operation(db):
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(IntegrityError):
        await uow.run(operation)


@pytest.mark.asyncio
async def test_notification_failure_is_swallowed(caplog):
    def broken_factory():
        raise RuntimeError("database unavailable")

    sink = DatabaseNotificationSink(broken_factory)

    await sink.publish(NotificationEvent(user_id=1, title="Hello", message="World"))

    assert "Failed to deliver notification" in caplog.text


@pytest.mark.asyncio
async def test_scan_commits_even_when_notification_fails(uow, db_session):
    """The ledger mutation stands; only the notification is lost."""
    owner = await create_user(db_session, "owner", UserRole.RESTAURANT_OWNER)
    alice = await create_user(db_session, "alice")
    bistro = await create_restaurant(db_session, owner, "bistro")

    def broken_factory():
        raise RuntimeError("database unavailable")

    engine = TransferEngine(
        uow, notifier=DatabaseNotificationSink(broken_factory), settings=test_settings,
        clock=lambda: datetime(2026, 3, 1, 12, 0, 0)
    )
    result = await engine.record_scan(alice.id, ScanCommand(
        restaurant_id=bistro.id,
        scan_type=ScanType.MEAL,
        qr_code=bistro.qr_code_meal,
        latitude=48.8566,
        longitude=2.3522,
    ))

    assert result.balance.stars_meal == 10
    async with uow.atomic() as db:
        account = await engine.ledger.get_balance(db, alice.id, bistro.id)
    assert account.stars_meal == 10
