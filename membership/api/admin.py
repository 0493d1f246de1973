"""
Admin back-office router.
Requires X-Admin-Key header for all endpoints.

- POST /v1/admin/subscriptions/assign
- POST /v1/admin/subscriptions/cancel
- GET  /v1/admin/subscriptions/{user_id}/report
- GET  /v1/admin/tiers/distribution
- POST /v1/admin/lifecycle/sweep
- GET  /v1/admin/audit
- GET  /v1/admin/payment-events
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from membership.api.deps import get_lifecycle_manager, get_tier_catalog
from membership.core.admin_auth import AdminActor, require_admin
from membership.features.admin import service as admin_service
from membership.features.billing.provider import BillingProviderError
from membership.features.catalog.service import TierCatalog
from membership.features.subscriptions.ledger import list_payment_events
from membership.features.subscriptions.service import SubscriptionLifecycleManager
from membership.models.subscription import SubscriptionState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class AssignTierRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    tier: str
    reason: str


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    reason: str


class SweepRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


@router.post("/subscriptions/assign", response_model=SubscriptionState)
def assign_tier(
    request: AssignTierRequest,
    actor: AdminActor = Depends(require_admin),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return admin_service.assign_tier(manager, actor.admin_id, request.user_id, request.tier, request.reason)
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/subscriptions/cancel", response_model=SubscriptionState)
def cancel_subscription(
    request: CancelRequest,
    actor: AdminActor = Depends(require_admin),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return admin_service.cancel(manager, actor.admin_id, request.user_id, request.reason)
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/subscriptions/{user_id}/report")
def subscription_report(
    user_id: str,
    actor: AdminActor = Depends(require_admin),
    catalog: TierCatalog = Depends(get_tier_catalog),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return admin_service.report(catalog, manager, user_id)


@router.get("/tiers/distribution")
def tier_distribution(
    actor: AdminActor = Depends(require_admin),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    return admin_service.tier_distribution(catalog)


@router.post("/lifecycle/sweep")
def sweep(
    request: Optional[SweepRequest] = None,
    actor: AdminActor = Depends(require_admin),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    limit = request.limit if request else 100
    result = manager.sweep(limit=limit)
    admin_service.record_admin_audit(
        actor=actor.actor,
        action="lifecycle_sweep",
        payload={"limit": limit, "transitions": len(result["transitions"])},
    )
    return result


@router.get("/audit")
def audit_log(
    limit: int = Query(50, ge=1, le=500),
    target_user_id: Optional[str] = Query(None, alias="userId"),
    actor: AdminActor = Depends(require_admin),
):
    return {"entries": admin_service.list_admin_audit(limit=limit, target_user_id=target_user_id)}


@router.get("/payment-events")
def payment_events(
    limit: int = Query(50, ge=1, le=500),
    user_id: Optional[str] = Query(None, alias="userId"),
    actor: AdminActor = Depends(require_admin),
):
    """Payment feed ledger (one row per applied type/reference), most recent first."""
    return {"events": list_payment_events(user_id=user_id, limit=limit)}
