"""
Payment Provider Webhook Endpoints.

Authenticated by provider signature only. A non-2xx answer makes the
provider redeliver, which is the recovery path for transient failures.
"""

from fastapi import APIRouter, Depends, Header, Request
from typing import Optional

from backend.app.api.deps import get_reconciler
from backend.app.domain.billing.subscription_reconciler import SubscriptionReconciler
from backend.app.schemas.billing import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    reconciler: SubscriptionReconciler = Depends(get_reconciler)
):
    """Verify the raw body signature, then reconcile the event."""
    raw_body = await request.body()
    return await reconciler.handle_webhook_event(raw_body, stripe_signature)
