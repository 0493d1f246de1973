"""
Admin override operations.

Handles:
- Tier assignment and cancellation (same transition path as payments)
- Subscription reports with admin markers
- Tier distribution for the dashboard
- Admin audit log
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, insert, func
from sqlalchemy.orm import Session

from membership.core.database import get_db_session, admin_audit, subscriptions, as_utc
from membership.core.errors import ValidationError
from membership.features.billing.service import cancel_subscription
from membership.features.catalog.service import TierCatalog, parse_tier
from membership.features.subscriptions.report import build_report
from membership.features.subscriptions.service import (
    LifecycleEvent,
    SubscriptionLifecycleManager,
    TransitionHook,
    TransitionPayload,
)
from membership.models.subscription import SubscriptionState, admin_actor
from membership.models.tier import Tier

logger = logging.getLogger(__name__)

REPORT_HISTORY_LIMIT = 20


def write_admin_audit(
    session: Session,
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """Insert one audit row in the caller's transaction."""
    session.execute(
        insert(admin_audit).values(
            actor=actor,
            action=action,
            target_user_id=target_user_id,
            target_resource=target_resource,
            payload_json=json.dumps(payload, default=str) if payload else None,
        )
    )


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action that does not change a subscription.

    Subscription overrides write their audit row through _audit_hook
    instead, so the override and its audit commit together.

    Args:
        actor: Admin identity ("admin:<id>")
        action: Action name (e.g., "lifecycle_sweep")
        target_user_id: User affected by action (optional)
        target_resource: Resource affected (optional)
        payload: Additional context (JSON-serialized)
    """
    with get_db_session() as session:
        write_admin_audit(session, actor, action, target_user_id, target_resource, payload)


def _audit_hook(
    actor: str,
    action: str,
    target_user_id: str,
    reason: str,
    target_resource: Optional[str] = None,
) -> TransitionHook:
    def hook(session: Session, state: SubscriptionState) -> None:
        write_admin_audit(
            session,
            actor,
            action,
            target_user_id=target_user_id,
            target_resource=target_resource,
            payload={"reason": reason, "status": state.status.value},
        )
    return hook


def list_admin_audit(
    limit: int = 50,
    actor: Optional[str] = None,
    target_user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Audit entries, most recent first (limit capped at 500)."""
    limit = min(limit, 500)
    query = select(admin_audit)
    if actor:
        query = query.where(admin_audit.c.actor == actor)
    if target_user_id:
        query = query.where(admin_audit.c.target_user_id == target_user_id)
    query = query.order_by(admin_audit.c.created_at.desc(), admin_audit.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(query).fetchall()

    return [
        {
            "id": row.id,
            "actor": row.actor,
            "action": row.action,
            "target_user_id": row.target_user_id,
            "target_resource": row.target_resource,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
            "created_at": as_utc(row.created_at).isoformat() if row.created_at else None,
        }
        for row in rows
    ]


def _require_reason(reason: Optional[str]) -> str:
    if not reason or not reason.strip():
        raise ValidationError("Admin actions require a reason", code="reason_required")
    return reason.strip()


def assign_tier(
    manager: SubscriptionLifecycleManager,
    admin_id: str,
    user_id: str,
    tier: str,
    reason: str,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    """
    Put the user on a tier with a fresh billing period, bypassing payment.

    Assigning free is a cancellation (fails if there is nothing to cancel).
    """
    target = parse_tier(tier)
    reason = _require_reason(reason)
    actor = admin_actor(admin_id)
    audit = _audit_hook(actor, "assign_tier", user_id, reason, target_resource=target.value)

    if target == Tier.FREE:
        state = cancel_subscription(
            manager, user_id, actor=actor, reason=reason, immediate=True, now=now, on_write=audit
        )
    else:
        state = manager.transition(
            user_id,
            LifecycleEvent.ADMIN_ASSIGNED,
            TransitionPayload(tier=target, reason=reason),
            actor=actor,
            now=now,
            on_write=audit,
        )

    logger.info(
        "[admin] tier assigned",
        extra={"actor": actor, "user_id": user_id, "tier": target.value},
    )
    return state


def cancel(
    manager: SubscriptionLifecycleManager,
    admin_id: str,
    user_id: str,
    reason: str,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    """Cancel immediately, here and at the provider, regardless of the cancellation mode."""
    reason = _require_reason(reason)
    actor = admin_actor(admin_id)
    state = cancel_subscription(
        manager,
        user_id,
        actor=actor,
        reason=reason,
        immediate=True,
        now=now,
        on_write=_audit_hook(actor, "cancel_subscription", user_id, reason),
    )
    logger.info("[admin] subscription cancelled", extra={"actor": actor, "user_id": user_id})
    return state


def report(
    catalog: TierCatalog,
    manager: SubscriptionLifecycleManager,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return build_report(catalog, manager, user_id, now=now, history_limit=REPORT_HISTORY_LIMIT)


def tier_distribution(catalog: TierCatalog) -> Dict[str, Any]:
    """Subscriber count and share per tier."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions.c.tier, func.count().label("count")).group_by(subscriptions.c.tier)
        ).fetchall()

    counts = {row.tier: row.count for row in rows}
    total = sum(counts.values())
    tiers = []
    for definition in catalog.tiers():
        count = counts.get(definition.tier.value, 0)
        tiers.append({
            "tier": definition.tier.value,
            "count": count,
            "percentage": round(count * 100.0 / total, 1) if total else 0.0,
        })
    return {"total": total, "tiers": tiers}
