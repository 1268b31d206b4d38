"""
Test doubles and data builders shared by the test modules.
"""

import calendar
import hashlib
import hmac
import itertools
import json
import time
import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import httpx
import stripe

from backend.app.core.config import Settings
from backend.app.core.jwt import create_access_token
from backend.app.core.reliability import CircuitBreaker
from backend.app.domain.billing.gateways import StripeGateway
from backend.app.domain.ledger import groups
from backend.app.models.enums import UserRole
from backend.app.models.plan import Plan
from backend.app.models.restaurant import Restaurant
from backend.app.models.topup_package import TopUpPackage
from backend.app.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"

test_settings = Settings(
    stripe_secret_key="sk_test_loyalty",
    stripe_webhook_secret=WEBHOOK_SECRET,
    paypal_client_id="paypal-client",
    paypal_client_secret="paypal-secret",
    paypal_api_base="https://paypal.test",
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.expiries = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        self.expiries[key] = ex
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.expiries = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class FakeStripeGateway(StripeGateway):
    """
    Real StripeGateway logic with the SDK network calls answered from
    in-memory sessions and subscriptions.
    """

    def __init__(self, settings: Settings = test_settings):
        super().__init__(settings=settings, breaker=CircuitBreaker("stripe-test"))
        self.sessions = {}
        self.subscriptions = {}
        self.payment_methods = {}
        self.calls = []
        self._ids = itertools.count(1)

    async def _call(self, func, *args, **kwargs):
        self.calls.append(func)
        if func == stripe.Customer.create:
            return SimpleNamespace(id=f"cus_test_{next(self._ids)}")
        if func == stripe.checkout.Session.create:
            session_id = f"cs_test_{next(self._ids)}"
            self.sessions[session_id] = {
                "id": session_id,
                "url": f"https://checkout.stripe.test/{session_id}",
                "mode": "subscription",
                "status": "open",
                "payment_status": "unpaid",
                "customer": kwargs.get("customer"),
                "metadata": kwargs.get("metadata"),
                "success_url": kwargs.get("success_url"),
                "invoice": None,
                "subscription": None,
            }
            return SimpleNamespace(id=session_id, url=self.sessions[session_id]["url"])
        if func == stripe.checkout.Session.retrieve:
            return self.sessions[args[0]]
        if func == stripe.Subscription.retrieve:
            return self.subscriptions[args[0]]
        if func == stripe.PaymentMethod.retrieve:
            return self.payment_methods[args[0]]
        raise AssertionError(f"Unexpected Stripe call {func}")

    def add_subscription(self, subscription_id, period_start, period_end, payment_method=None):
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "current_period_start": utc_timestamp(period_start),
            "current_period_end": utc_timestamp(period_end),
            "default_payment_method": payment_method,
        }
        return self.subscriptions[subscription_id]

    def complete_session(self, session_id, invoice=None, subscription=None):
        self.sessions[session_id].update(
            status="complete", payment_status="paid", invoice=invoice, subscription=subscription
        )


class PayPalSandbox:
    """httpx MockTransport handler imitating the PayPal REST endpoints used by the gateway."""

    def __init__(self):
        self.requests = []
        self.capture_status = "COMPLETED"
        self.fail_with = None
        self._ids = itertools.count(1)

    def paths(self):
        return [request.url.path for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"name": "INTERNAL_SERVICE_ERROR"})
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-test-token", "expires_in": 3600})
        if path == "/v2/checkout/orders":
            order_id = f"ORDER-{next(self._ids)}"
            return httpx.Response(201, json={
                "id": order_id,
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"https://paypal.test/v2/checkout/orders/{order_id}"},
                    {"rel": "approve", "href": f"https://paypal.test/checkoutnow?token={order_id}"},
                ],
            })
        if path.endswith("/capture"):
            order_id = path.split("/")[-2]
            return httpx.Response(201, json={"id": order_id, "status": self.capture_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


def utc_timestamp(value: datetime) -> int:
    """Epoch seconds of a naive UTC datetime."""
    return calendar.timegm(value.utctimetuple())


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header value: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


# --- Data builders ---

async def create_user(db, username: str, role: UserRole = UserRole.CLIENT) -> User:
    user = User(
        email=f"{username}@example.com",
        username=username,
        full_name=username.title(),
        qr_code=f"USER-{username.upper()}",
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


async def create_restaurant(db, owner: User, name: str, latitude=48.8566, longitude=2.3522) -> Restaurant:
    restaurant = Restaurant(
        id=str(uuid.uuid4()),
        owner_id=owner.id,
        name=name,
        latitude=latitude,
        longitude=longitude,
        qr_code_meal=f"{name.upper()}-MEAL",
        qr_code_drink=f"{name.upper()}-DRINK",
    )
    db.add(restaurant)
    await db.commit()
    return restaurant


async def create_plan(db, title="Pro", price="29.90", duration=30, stripe_price_id="price_pro") -> Plan:
    plan = Plan(
        title=title,
        price=Decimal(price),
        currency="EUR",
        duration=duration,
        stripe_price_id=stripe_price_id,
        is_active=True,
    )
    db.add(plan)
    await db.commit()
    return plan


async def create_package(db, restaurant: Restaurant, amount="20.00", bonus="5.00", is_active=True) -> TopUpPackage:
    package = TopUpPackage(
        restaurant_id=restaurant.id,
        name=f"{amount} pack",
        amount=Decimal(amount),
        bonus=Decimal(bonus),
        is_active=is_active,
    )
    db.add(package)
    await db.commit()
    return package


async def join_group(db, group_id: str, restaurant: Restaurant):
    """Invite the restaurant and accept on behalf of its owner."""
    request = await groups.invite_restaurant(db, group_id, restaurant.id)
    return await groups.respond_to_invite(db, request.id, restaurant.owner_id, accept=True)


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": user.username, "user_id": user.id, "role": user.role})
    return {"Authorization": f"Bearer {token}"}
