"""
membership/models/entitlement.py

Outcome of an entitlement check.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DecisionReason(str, Enum):
    OK = "ok"
    TIER_TOO_LOW = "tier-too-low"
    QUOTA_EXHAUSTED = "quota-exhausted"


class EntitlementDecision(BaseModel):
    """
    allowed: whether the gated action may proceed
    remaining: units left in the current period (None = unlimited or not metered)
    reason: ok | tier-too-low | quota-exhausted
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: Optional[int] = None
    reason: DecisionReason
