"""
Subscription API routes. Every route acts on the caller's own subscription
(X-User-Id must match the path).

- GET  /v1/subscriptions/{user_id}: effective subscription state
- GET  /v1/subscriptions/{user_id}/history: transition log, most recent first
- GET  /v1/subscriptions/{user_id}/usage: usage counters of every period
- POST /v1/subscriptions/{user_id}/transition: user-initiated lifecycle event
- GET  /v1/subscriptions/{user_id}/report: subscription + usage summary
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from membership.api.deps import get_lifecycle_manager, get_tier_catalog, require_caller
from membership.features.billing.provider import BillingProviderError
from membership.features.billing.service import cancel_subscription
from membership.features.catalog.service import TierCatalog, parse_capability
from membership.features.subscriptions.report import build_report
from membership.features.subscriptions.service import (
    LifecycleEvent,
    SubscriptionLifecycleManager,
    TransitionPayload,
    parse_event,
)
from membership.features.usage import service as usage_store
from membership.models.subscription import ACTOR_USER, HistoryEntry, SubscriptionState
from membership.models.usage import UsageCounter


router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


class TransitionRequest(BaseModel):
    """Lifecycle event and its payload (paymentReference, tier, periodEnd, reason, immediate)."""
    event: str
    payload: Optional[Dict[str, Any]] = None


@router.get("/{user_id}", response_model=SubscriptionState)
def current(
    user_id: str,
    caller: str = Depends(require_caller),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.current(user_id)


@router.get("/{user_id}/history", response_model=List[HistoryEntry])
def history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    caller: str = Depends(require_caller),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    manager.get_subscription(user_id)
    return manager.history(user_id, limit=limit)


@router.get("/{user_id}/usage", response_model=List[UsageCounter])
def usage(
    user_id: str,
    feature: Optional[str] = Query(None),
    caller: str = Depends(require_caller),
):
    return usage_store.history(user_id, parse_capability(feature) if feature else None)


@router.post("/{user_id}/transition", response_model=SubscriptionState)
def transition(
    user_id: str,
    request: TransitionRequest,
    caller: str = Depends(require_caller),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Errors:
        401/403: missing or foreign X-User-Id
        409: event not valid for the current state
        502: provider cancellation failed (nothing changed)
    """
    event = parse_event(request.event)
    if event != LifecycleEvent.CANCELLED:
        return manager.transition(user_id, event, request.payload, actor=ACTOR_USER)

    body = TransitionPayload.coerce(request.payload)
    try:
        return cancel_subscription(
            manager, user_id, actor=ACTOR_USER, reason=body.reason, immediate=body.immediate
        )
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/{user_id}/report")
def report(
    user_id: str,
    caller: str = Depends(require_caller),
    catalog: TierCatalog = Depends(get_tier_catalog),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return build_report(catalog, manager, user_id)
