"""
Subscription report: current state plus usage for the current period.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from membership.features.catalog.service import UNLIMITED, TierCatalog
from membership.features.subscriptions.service import SubscriptionLifecycleManager
from membership.features.usage import service as usage_store


def build_report(
    catalog: TierCatalog,
    manager: SubscriptionLifecycleManager,
    user_id: str,
    *,
    now: Optional[datetime] = None,
    history_limit: Optional[int] = None,
) -> Dict[str, Any]:
    """
    {subscription, period_key, usage_summary[, history]}

    history is included only when history_limit is given.
    """
    state = manager.refresh(user_id, now)
    period_key = usage_store.period_key_for(state, now)
    consumed = usage_store.usage_summary(user_id, period_key)

    summary = []
    for feature in catalog.metered_capabilities():
        used = consumed.get(feature.value, 0)
        limit = catalog.limit_for(state.tier, feature)
        summary.append({
            "feature": feature.value,
            "allowed": catalog.is_allowed(state.tier, feature),
            "consumed": used,
            "limit": None if limit == UNLIMITED else limit,
            "remaining": None if limit == UNLIMITED else max(0, limit - used),
        })

    report: Dict[str, Any] = {
        "subscription": state.model_dump(mode="json"),
        "period_key": period_key,
        "usage_summary": summary,
    }
    if history_limit is not None:
        report["history"] = [
            entry.model_dump(mode="json") for entry in manager.history(user_id, limit=history_limit)
        ]
    return report
