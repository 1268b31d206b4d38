"""
Payment Gateways.

Stripe (card processor, subscription-mode Checkout) and PayPal (redirect
processor, CAPTURE orders). Gateways only talk to the provider; they never
touch the database, so callers run them outside any open transaction.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import stripe
from starlette.concurrency import run_in_threadpool

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import (
    PaymentProviderError,
    SignatureVerificationError,
    ValidationError,
)
from backend.app.core.reliability import (
    CircuitBreaker,
    CircuitOpenError,
    paypal_circuit_breaker,
    stripe_circuit_breaker,
)
from backend.app.models.billing_enums import PaymentProvider

logger = logging.getLogger("loyalty.gateways")

# Seconds per Stripe price interval; months and years are approximated
INTERVAL_SECONDS = {
    "day": 24 * 60 * 60,
    "week": 7 * 24 * 60 * 60,
    "month": 30 * 24 * 60 * 60,
    "year": 365 * 24 * 60 * 60,
}


@dataclass
class CheckoutRequest:
    restaurant_id: str
    plan_id: int
    title: str
    amount: Decimal
    currency: str
    success_url: str
    cancel_url: str
    stripe_price_id: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass
class CheckoutSession:
    provider: PaymentProvider
    handle: str
    url: str
    customer_id: Optional[str] = None


@dataclass
class CheckoutConfirmation:
    """What the provider reported about a completed checkout."""
    handle: str
    provider_invoice_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payment_method: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    pdf_url: Optional[str] = None


@dataclass
class InvoiceNotice:
    """A provider invoice as described by an invoice.* webhook event."""
    invoice_id: str
    subscription_id: Optional[str]
    amount_due: Decimal
    amount_paid: Decimal
    currency: str
    hosted_invoice_url: Optional[str] = None
    pdf_url: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payment_method: Optional[str] = None


def _field(obj: Any, name: str, default=None):
    """Read a field from a webhook JSON dict or a stripe SDK object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _from_timestamp(value) -> Optional[datetime]:
    if value and isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    return None


def _cents(value) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def subscription_period(subscription: Any):
    """
    Current billing period of a Stripe subscription as naive UTC datetimes.

    Reads current_period_start/end from the subscription, then from its
    first item, then falls back to billing_cycle_anchor plus the price
    interval.
    """
    items = _field(_field(subscription, "items"), "data") or []
    first_item = items[0] if items else None

    start = _field(subscription, "current_period_start") or _field(first_item, "current_period_start")
    end = _field(subscription, "current_period_end") or _field(first_item, "current_period_end")

    if not start and _field(subscription, "billing_cycle_anchor"):
        start = _field(subscription, "billing_cycle_anchor")
        price = _field(first_item, "price")
        interval = _field(price, "interval") or _field(_field(price, "recurring"), "interval")
        count = _field(price, "interval_count") or _field(_field(price, "recurring"), "interval_count")
        if interval and count:
            end = start + INTERVAL_SECONDS.get(interval, INTERVAL_SECONDS["month"]) * count

    return _from_timestamp(start), _from_timestamp(end)


class PaymentGateway(ABC):
    provider: PaymentProvider

    @abstractmethod
    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        ...

    @abstractmethod
    async def confirm_checkout(self, handle: str) -> CheckoutConfirmation:
        """Verify with the provider that the checkout was paid."""


class StripeGateway(PaymentGateway):
    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        settings: Optional[Settings] = None,
        breaker: CircuitBreaker = stripe_circuit_breaker,
    ):
        self.settings = settings or default_settings
        self.breaker = breaker

    @property
    def api_key(self) -> Optional[str]:
        return self.settings.stripe_secret_key

    async def _call(self, func, *args, **kwargs):
        """Run a blocking stripe SDK call in the thread pool behind the circuit breaker."""
        if not self.api_key:
            raise PaymentProviderError("stripe", "Stripe is not configured")
        try:
            return await self.breaker.call(run_in_threadpool, func, *args, api_key=self.api_key, **kwargs)
        except CircuitOpenError:
            raise PaymentProviderError("stripe", "Stripe is temporarily unavailable")
        except stripe.StripeError as exc:
            logger.error("Stripe request failed: %s", exc)
            raise PaymentProviderError("stripe", getattr(exc, "user_message", None) or "Stripe request failed")

    # --- Checkout ---

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        if not request.stripe_price_id:
            raise ValidationError("Plan is not configured for Stripe subscriptions")

        customer_id = request.customer_id
        if not customer_id:
            customer = await self._call(
                stripe.Customer.create, metadata={"restaurantId": request.restaurant_id}
            )
            customer_id = customer.id

        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": request.stripe_price_id, "quantity": 1}],
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            metadata={"restaurantId": request.restaurant_id, "planId": str(request.plan_id)},
        )
        return CheckoutSession(
            provider=self.provider,
            handle=session.id,
            url=session.url,
            customer_id=customer_id
        )

    async def confirm_checkout(self, handle: str) -> CheckoutConfirmation:
        session = await self._call(stripe.checkout.Session.retrieve, handle, expand=["subscription"])
        if _field(session, "mode") != "subscription":
            raise ValidationError("Invalid session mode")
        if _field(session, "status") != "complete" and _field(session, "payment_status") != "paid":
            raise ValidationError("Payment not completed")
        return await self.describe_checkout_session(session)

    async def describe_checkout_session(self, session: Any) -> CheckoutConfirmation:
        """Build a confirmation from a Checkout Session (SDK object or webhook payload)."""
        invoice_id = _field(session, "invoice")
        if not isinstance(invoice_id, str):
            invoice_id = _field(invoice_id, "id")

        confirmation = CheckoutConfirmation(
            handle=_field(session, "id"),
            provider_invoice_id=invoice_id,
            payment_method="stripe",
        )
        if invoice_id:
            confirmation.hosted_invoice_url = f"https://dashboard.stripe.com/invoices/{invoice_id}"
            confirmation.pdf_url = f"https://dashboard.stripe.com/invoices/{invoice_id}/pdf"

        subscription = _field(session, "subscription")
        if subscription is None:
            return confirmation
        if isinstance(subscription, str):
            subscription = await self._call(stripe.Subscription.retrieve, subscription)

        confirmation.provider_subscription_id = _field(subscription, "id")
        confirmation.period_start, confirmation.period_end = subscription_period(subscription)
        confirmation.payment_method = await self.payment_method_label(subscription)
        return confirmation

    async def payment_method_label(self, subscription: Any) -> str:
        """Human label of the subscription's default payment method, e.g. 'CARD (visa)'."""
        pm_ref = _field(subscription, "default_payment_method")
        if not pm_ref:
            return "stripe"
        try:
            pm = pm_ref if not isinstance(pm_ref, str) else await self._call(stripe.PaymentMethod.retrieve, pm_ref)
        except PaymentProviderError:
            logger.warning("Could not retrieve payment method %s", pm_ref)
            return "stripe"
        brand = _field(_field(pm, "card"), "brand")
        return f"{(_field(pm, 'type') or 'card').upper()} ({brand or 'CARD'})"

    # --- Invoices ---

    async def describe_invoice(self, invoice: Any) -> InvoiceNotice:
        subscription_id = _field(invoice, "subscription")
        if subscription_id is None:
            lines = _field(_field(invoice, "lines"), "data") or []
            subscription_id = _field(lines[0], "subscription") if lines else None
        if subscription_id is None:
            details = _field(_field(invoice, "parent"), "subscription_details")
            subscription_id = _field(details, "subscription")
        if subscription_id is not None and not isinstance(subscription_id, str):
            subscription_id = _field(subscription_id, "id")

        notice = InvoiceNotice(
            invoice_id=_field(invoice, "id"),
            subscription_id=subscription_id,
            amount_due=_cents(_field(invoice, "amount_due")),
            amount_paid=_cents(_field(invoice, "amount_paid")),
            currency=(_field(invoice, "currency") or self.settings.default_currency).upper(),
            hosted_invoice_url=_field(invoice, "hosted_invoice_url"),
            pdf_url=_field(invoice, "invoice_pdf"),
        )
        if subscription_id:
            subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
            notice.period_start, notice.period_end = subscription_period(subscription)
            notice.payment_method = await self.payment_method_label(subscription)
        return notice

    # --- Webhooks ---

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header against the raw request body and
        return the parsed event. Nothing is parsed before verification.
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise SignatureVerificationError("Webhook secret is not configured")
        if not signature_header:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                raw_body, signature_header, secret,
                tolerance=self.settings.stripe_webhook_tolerance_seconds
            )
        except stripe.SignatureVerificationError:
            logger.warning("Rejected webhook with invalid signature")
            raise SignatureVerificationError()
        except ValueError:
            raise SignatureVerificationError("Webhook payload is not valid JSON")
        return json.loads(raw_body)


class PayPalGateway(PaymentGateway):
    provider = PaymentProvider.PAYPAL
    TOKEN_CACHE_KEY = "paypal:access_token"

    def __init__(
        self,
        redis=None,
        settings: Optional[Settings] = None,
        breaker: CircuitBreaker = paypal_circuit_breaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.redis = redis
        self.settings = settings or default_settings
        self.breaker = breaker
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.paypal_client_id and self.settings.paypal_client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.paypal_api_base,
            transport=self.transport,
            timeout=15.0
        )

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with self._client() as client:
            response = await client.request(method, path, **kwargs)
        if response.status_code >= 500:
            # Counted by the breaker
            response.raise_for_status()
        return response

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.breaker.call(self._send, method, path, **kwargs)
        except CircuitOpenError:
            raise PaymentProviderError("paypal", "PayPal is temporarily unavailable")
        except httpx.HTTPError as exc:
            logger.error("PayPal %s %s failed: %s", method, path, exc)
            raise PaymentProviderError("paypal", "PayPal request failed")
        if response.status_code >= 400:
            logger.error("PayPal %s %s returned %s: %s", method, path, response.status_code, response.text)
            raise PaymentProviderError("paypal", f"PayPal request failed with status {response.status_code}")
        return response.json()

    async def access_token(self) -> str:
        """OAuth client-credentials token, cached in Redis until a minute before expiry."""
        if self.redis is not None:
            cached = await self.redis.get(self.TOKEN_CACHE_KEY)
            if cached:
                return cached.decode() if isinstance(cached, bytes) else cached

        data = await self._request(
            "POST", "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
        )
        token = data["access_token"]
        if self.redis is not None:
            ttl = max(int(data.get("expires_in", 0)) - 60, 1)
            await self.redis.set(self.TOKEN_CACHE_KEY, token, ex=ttl)
        return token

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        if not self.is_configured:
            raise ValidationError("PayPal is not configured")
        token = await self.access_token()
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": request.currency,
                        "value": f"{Decimal(request.amount):.2f}",
                    },
                    "description": request.title or "Subscription plan",
                }
            ],
            "application_context": {
                "return_url": request.success_url,
                "cancel_url": request.cancel_url,
                "brand_name": self.settings.paypal_brand_name,
            },
        }
        data = await self._request(
            "POST", "/v2/checkout/orders",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        approve = next((link["href"] for link in data.get("links", []) if link.get("rel") == "approve"), None)
        if not approve:
            raise PaymentProviderError("paypal", "PayPal order missing approval link")
        return CheckoutSession(provider=self.provider, handle=data["id"], url=approve)

    async def confirm_checkout(self, handle: str) -> CheckoutConfirmation:
        if not self.is_configured:
            raise ValidationError("PayPal is not configured")
        token = await self.access_token()
        data = await self._request(
            "POST", f"/v2/checkout/orders/{handle}/capture",
            json={},
            headers={"Authorization": f"Bearer {token}"},
        )
        if data.get("status") != "COMPLETED":
            raise ValidationError("Payment not completed", details={"status": data.get("status")})
        return CheckoutConfirmation(handle=handle, payment_method="PayPal")


def build_gateways(redis=None, settings: Optional[Settings] = None) -> Dict[PaymentProvider, PaymentGateway]:
    return {
        PaymentProvider.STRIPE: StripeGateway(settings=settings),
        PaymentProvider.PAYPAL: PayPalGateway(redis=redis, settings=settings),
    }


def period_or_default(start: Optional[datetime], end: Optional[datetime], now: datetime, days: int):
    """Provider period when known, otherwise [now, now + days]."""
    return start or now, end or now + timedelta(days=days)
