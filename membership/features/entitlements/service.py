"""
membership/features/entitlements/service.py

Entitlement evaluator.

Handles:
- Minimum-tier checks (no side effects)
- Feature checks with combined check-and-consume for metered capabilities
- Non-consuming peek
- Requirement parsing for external input

Entitlement checks fail closed: any error propagates and nothing is allowed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union
import logging

from membership.core.errors import ValidationError
from membership.features.catalog.service import (
    UNLIMITED,
    TierCatalog,
    parse_capability,
    parse_tier,
)
from membership.features.subscriptions.service import SubscriptionLifecycleManager
from membership.features.usage import service as usage_store
from membership.models.entitlement import DecisionReason, EntitlementDecision
from membership.models.tier import Capability, Tier


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MinTierRequirement:
    min_tier: Tier


@dataclass(frozen=True)
class FeatureRequirement:
    feature: Capability
    quantity: int = 1

    def __post_init__(self):
        usage_store.validate_quantity(self.quantity)


Requirement = Union[MinTierRequirement, FeatureRequirement]


def parse_requirement(payload: Dict[str, Any]) -> Requirement:
    """
    Build a requirement from {"minTier": ...} or {"feature": ..., "quantity": n}.

    Raises:
        ValidationError: neither or both shapes, unknown tier/feature, bad quantity
    """
    if not isinstance(payload, dict):
        raise ValidationError("Requirement must be an object", code="invalid_requirement")

    min_tier = payload.get("minTier", payload.get("min_tier"))
    feature = payload.get("feature")
    if (min_tier is None) == (feature is None):
        raise ValidationError(
            "Requirement must specify exactly one of minTier or feature",
            code="invalid_requirement",
        )
    if min_tier is not None:
        return MinTierRequirement(min_tier=parse_tier(min_tier))
    quantity = payload.get("quantity", 1)
    return FeatureRequirement(feature=parse_capability(feature), quantity=quantity)


class EntitlementEvaluator:
    """Decides allow/deny for a user against the tier catalog."""

    def __init__(self, catalog: TierCatalog, lifecycle: SubscriptionLifecycleManager):
        self.catalog = catalog
        self.lifecycle = lifecycle

    def evaluate(self, user_id: str, requirement: Requirement, *, now: Optional[datetime] = None) -> EntitlementDecision:
        """
        Evaluate and, for metered features, consume on success.

        The increment is conditional on staying within the limit, so two
        concurrent requests cannot both take the last unit.
        """
        return self._decide(user_id, requirement, now=now, consume=True)

    def peek(self, user_id: str, requirement: Requirement, *, now: Optional[datetime] = None) -> EntitlementDecision:
        """Same decision as evaluate() without consuming anything."""
        return self._decide(user_id, requirement, now=now, consume=False)

    def usage(self, user_id: str, feature: Union[Capability, str], *, now: Optional[datetime] = None) -> Tuple[int, int]:
        """(consumed, limit) for the current period. limit is UNLIMITED (-1) when uncapped."""
        state = self.lifecycle.current(user_id, now)
        period_key = usage_store.period_key_for(state, now)
        return usage_store.peek(user_id, feature, period_key), self.catalog.limit_for(state.tier, feature)

    def _decide(self, user_id: str, requirement: Requirement, *, now: Optional[datetime], consume: bool) -> EntitlementDecision:
        state = self.lifecycle.current(user_id, now)
        tier = state.tier

        if isinstance(requirement, MinTierRequirement):
            allowed = self.catalog.rank_of(tier) >= self.catalog.rank_of(requirement.min_tier)
            decision = EntitlementDecision(
                allowed=allowed,
                remaining=None,
                reason=DecisionReason.OK if allowed else DecisionReason.TIER_TOO_LOW,
            )
            self._log(user_id, tier, requirement.min_tier.value, decision)
            return decision

        if not isinstance(requirement, FeatureRequirement):
            raise ValidationError(f"Unsupported requirement: {requirement!r}", code="invalid_requirement")

        feature = requirement.feature
        if not self.catalog.is_allowed(tier, feature):
            decision = EntitlementDecision(allowed=False, remaining=0, reason=DecisionReason.TIER_TOO_LOW)
            self._log(user_id, tier, feature.value, decision)
            return decision

        limit = self.catalog.limit_for(tier, feature)
        if limit == UNLIMITED:
            decision = EntitlementDecision(allowed=True, remaining=None, reason=DecisionReason.OK)
            self._log(user_id, tier, feature.value, decision)
            return decision

        quantity = requirement.quantity
        period_key = usage_store.period_key_for(state, now)

        if consume:
            new_consumed = usage_store.consume(user_id, feature, quantity, period_key, ceiling=limit, now=now)
            if new_consumed is not None:
                decision = EntitlementDecision(
                    allowed=True,
                    remaining=limit - new_consumed,
                    reason=DecisionReason.OK,
                )
                self._log(user_id, tier, feature.value, decision, quantity=quantity, period_key=period_key)
                return decision
            consumed = usage_store.peek(user_id, feature, period_key)
        else:
            consumed = usage_store.peek(user_id, feature, period_key)
            if consumed + quantity <= limit:
                decision = EntitlementDecision(
                    allowed=True,
                    remaining=limit - (consumed + quantity),
                    reason=DecisionReason.OK,
                )
                self._log(user_id, tier, feature.value, decision, quantity=quantity, period_key=period_key)
                return decision

        decision = EntitlementDecision(
            allowed=False,
            remaining=max(0, limit - consumed),
            reason=DecisionReason.QUOTA_EXHAUSTED,
        )
        self._log(user_id, tier, feature.value, decision, quantity=quantity, period_key=period_key)
        return decision

    @staticmethod
    def _log(user_id: str, tier: Tier, requirement: str, decision: EntitlementDecision, **fields) -> None:
        extra = {
            "user_id": user_id,
            "tier": tier.value,
            "requirement": requirement,
            "reason": decision.reason.value,
            "remaining": decision.remaining,
            **fields,
        }
        if decision.allowed:
            logger.info("[entitlement] ALLOWED", extra=extra)
        else:
            logger.warning("[entitlement] DENY", extra=extra)
