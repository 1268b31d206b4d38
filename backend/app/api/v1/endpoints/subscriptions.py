"""
Restaurant Subscription API Endpoints.

Plan checkout and confirmation for restaurant owners.
"""

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_checkout_service, get_reconciler
from backend.app.core.guards import require_role
from backend.app.domain.billing.checkout_service import CheckoutService, CheckoutCommand
from backend.app.domain.billing.subscription_reconciler import SubscriptionReconciler
from backend.app.models.enums import UserRole
from backend.app.schemas.billing import CheckoutCreate, CheckoutResponse, ConfirmRequest, ActivationResponse

router = APIRouter(prefix="/restaurant/subscriptions", tags=["Restaurant - Subscriptions"])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    req: CheckoutCreate,
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    service: CheckoutService = Depends(get_checkout_service)
):
    """Open a Stripe Checkout Session or a PayPal order for a plan."""
    result = await service.create_checkout(
        current_user["user_id"],
        CheckoutCommand(
            plan_id=req.plan_id,
            provider=req.provider,
            success_url=req.success_url,
            cancel_url=req.cancel_url
        )
    )
    return CheckoutResponse(
        provider=result.provider,
        id=result.handle,
        url=result.url,
        payment_id=result.payment_id,
        subscription_id=result.subscription_id
    )


@router.post("/confirm", response_model=ActivationResponse)
async def confirm_checkout(
    req: ConfirmRequest,
    current_user: dict = Depends(require_role([UserRole.RESTAURANT_OWNER])),
    reconciler: SubscriptionReconciler = Depends(get_reconciler)
):
    """Confirm a returned checkout and activate (or renew) the subscription."""
    return await reconciler.confirm_payment(req.handle, owner_user_id=current_user["user_id"])
