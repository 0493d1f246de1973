"""
Billing API routes.

Minimal surface:
- POST /v1/billing/checkout: Create checkout session (subscription -> pending)
- POST /v1/billing/webhook: Handle Stripe webhooks
- GET  /v1/billing/plans: Tier prices and feature grants
"""
from typing import Optional
from fastapi import APIRouter, Depends, Request, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from membership.api.deps import get_lifecycle_manager, get_tier_catalog
from membership.features.billing.provider import BillingProviderError, BillingWebhookError
from membership.features.billing.service import (
    billing_enabled,
    list_plans,
    process_webhook,
    start_checkout,
)
from membership.features.catalog.service import TierCatalog
from membership.features.subscriptions.service import SubscriptionLifecycleManager
from membership.models.subscription import SubscriptionState


router = APIRouter(prefix="/v1/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    tier: str
    success_url: str = Field(..., alias="successUrl")
    cancel_url: str = Field(..., alias="cancelUrl")


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    url: Optional[str]
    session_id: str
    subscription: SubscriptionState


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Invalid tier or no price configured
        409: Subscription cannot start a checkout
        502: Stripe API error
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled: STRIPE_SECRET_KEY not set")

    try:
        result = start_checkout(
            manager,
            user_id=request.user_id,
            tier=request.tier,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if not result:
        raise HTTPException(status_code=503, detail="Billing disabled")
    return result


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Handle Stripe webhook events.

    Verifies signature and feeds the event to the lifecycle manager, which
    deduplicates on (event type, payment reference).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled or datastore unavailable (provider retries)
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(process_webhook, manager, headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, **result}


@router.get("/plans")
def plans(catalog: TierCatalog = Depends(get_tier_catalog)):
    return {"plans": list_plans(catalog)}
