"""
Request-scoped service wiring.

FastAPI caches each dependency once per request, so every route in a request
shares one TierCache and one lifecycle manager built on it.
"""
from typing import Any, Dict, Optional

from fastapi import Depends, Header

from membership.core.config import LifecyclePolicy
from membership.core.errors import AuthenticationError, EntitlementDeniedError, PermissionError
from membership.features.catalog.service import TierCatalog, get_catalog
from membership.features.entitlements.service import EntitlementEvaluator, parse_requirement
from membership.features.subscriptions.service import SubscriptionLifecycleManager, TierCache
from membership.models.entitlement import EntitlementDecision


def get_tier_catalog() -> TierCatalog:
    return get_catalog()


def get_lifecycle_policy() -> LifecyclePolicy:
    return LifecyclePolicy.from_settings()


def get_tier_cache() -> TierCache:
    return TierCache()


def get_lifecycle_manager(
    policy: LifecyclePolicy = Depends(get_lifecycle_policy),
    tier_cache: TierCache = Depends(get_tier_cache),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(policy=policy, tier_cache=tier_cache)


def get_evaluator(
    catalog: TierCatalog = Depends(get_tier_catalog),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> EntitlementEvaluator:
    return EntitlementEvaluator(catalog, manager)


def require_entitlement(requirement: Dict[str, Any]):
    """
    Dependency factory gating a route on an entitlement.

    The caller is identified by X-User-Id (set by the auth layer in front of
    this service). Denials raise EntitlementDeniedError (403); any internal
    error propagates, so the route never runs on a failed check.

    Usage:
        @router.post("/guides/advanced", dependencies=[Depends(require_entitlement({"feature": "advanced-troubleshooting"}))])
    """
    parsed = parse_requirement(requirement)

    def dependency(
        x_user_id: str = Header(..., alias="X-User-Id"),
        evaluator: EntitlementEvaluator = Depends(get_evaluator),
    ) -> EntitlementDecision:
        decision = evaluator.evaluate(x_user_id, parsed)
        if not decision.allowed:
            raise EntitlementDeniedError(
                f"Entitlement denied: {decision.reason.value}",
                reason=decision.reason.value,
                remaining=decision.remaining,
            )
        return decision

    return dependency


def require_caller(
    user_id: str,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """
    The caller may only act on their own subscription.

    Used on routes with a {user_id} path parameter; X-User-Id must name the
    same user.
    """
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header", code="caller_required")
    if x_user_id != user_id:
        raise PermissionError("Callers may only act on their own subscription", code="caller_mismatch")
    return x_user_id
