"""
Entitlement API routes.

- POST /v1/entitlements/evaluate: decide and consume on success
- POST /v1/entitlements/peek: decide without consuming
- GET  /v1/entitlements/{user_id}/usage/{feature}: current-period quota of the caller
"""
from typing import Any, Dict
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from membership.api.deps import get_evaluator, require_caller
from membership.features.catalog.service import UNLIMITED, parse_capability
from membership.features.entitlements.service import EntitlementEvaluator, parse_requirement
from membership.models.entitlement import EntitlementDecision


router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


class EvaluateRequest(BaseModel):
    """{"userId": ..., "requirement": {"minTier": ...} | {"feature": ..., "quantity": n}}"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    requirement: Dict[str, Any]


@router.post("/evaluate", response_model=EntitlementDecision)
def evaluate(request: EvaluateRequest, evaluator: EntitlementEvaluator = Depends(get_evaluator)):
    return evaluator.evaluate(request.user_id, parse_requirement(request.requirement))


@router.post("/peek", response_model=EntitlementDecision)
def peek(request: EvaluateRequest, evaluator: EntitlementEvaluator = Depends(get_evaluator)):
    return evaluator.peek(request.user_id, parse_requirement(request.requirement))


@router.get("/{user_id}/usage/{feature}")
def usage(
    user_id: str,
    feature: str,
    caller: str = Depends(require_caller),
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
):
    capability = parse_capability(feature)
    consumed, limit = evaluator.usage(user_id, capability)
    unlimited = limit == UNLIMITED
    return {
        "feature": capability.value,
        "consumed": consumed,
        "limit": None if unlimited else limit,
        "remaining": None if unlimited else max(0, limit - consumed),
    }
