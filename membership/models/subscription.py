"""
membership/models/subscription.py

Subscription state and its append-only history.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from membership.core.errors import StateError
from membership.models.tier import Tier


class SubscriptionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# Statuses that carry a billing period (and therefore a period-scoped usage key)
BILLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})

# Who triggered a transition; admins are recorded as "admin:<id>"
ACTOR_PAYMENT = "payment"
ACTOR_USER = "user"
ACTOR_SYSTEM = "system"
ADMIN_ACTOR_PREFIX = "admin:"


def admin_actor(admin_id: str) -> str:
    return f"{ADMIN_ACTOR_PREFIX}{admin_id}"


def is_admin_actor(actor: str) -> bool:
    return actor.startswith(ADMIN_ACTOR_PREFIX)


class SubscriptionState(BaseModel):
    """
    Current subscription of a user (exactly one per user).

    Invariants:
    - active => tier != free
    - none => tier == free
    - period_end >= period_start while active or past_due
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.NONE
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payment_reference: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    pending_tier: Optional[Tier] = None
    cancel_requested: bool = False
    past_due_since: Optional[datetime] = None
    admin_marker: bool = False
    admin_reason: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def has_billing_period(self) -> bool:
        return self.status in BILLED_STATUSES

    def check_invariants(self) -> None:
        if self.status == SubscriptionStatus.ACTIVE and self.tier == Tier.FREE:
            raise StateError(
                f"Subscription for {self.user_id} cannot be active on the free tier",
                code="invariant_violation",
            )
        if self.status == SubscriptionStatus.NONE and self.tier != Tier.FREE:
            raise StateError(
                f"Subscription for {self.user_id} has tier {self.tier.value} without a subscription",
                code="invariant_violation",
            )
        if self.has_billing_period:
            if self.period_start is None or self.period_end is None:
                raise StateError(
                    f"Subscription for {self.user_id} is {self.status.value} without a billing period",
                    code="invariant_violation",
                )
            if self.period_end < self.period_start:
                raise StateError(
                    f"Subscription for {self.user_id} ends before it starts",
                    code="invariant_violation",
                )


class HistoryEntry(BaseModel):
    """One row of the append-only transition log."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    event: str
    from_status: Optional[SubscriptionStatus] = None
    to_status: SubscriptionStatus
    from_tier: Optional[Tier] = None
    to_tier: Tier
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payment_reference: Optional[str] = None
    actor: str
    admin_action: bool = False
    reason: Optional[str] = None
    occurred_at: datetime
