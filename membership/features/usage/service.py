"""
membership/features/usage/service.py

Usage metering store.

Handles:
- Per-period counters keyed by (user, feature, period_key)
- Atomic increment-if-under-ceiling (single conditional UPDATE)
- Period key derivation from the subscription's billing period
- Usage summaries for reports
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union
import logging
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from membership.core.database import get_db_session, usage_counters, as_utc
from membership.core.errors import ValidationError
from membership.models.subscription import SubscriptionState
from membership.models.usage import UsageCounter


logger = logging.getLogger(__name__)

PERIOD_KEY_PREFIX = "p-"


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _feature_key(feature: Union[Enum, str]) -> str:
    return feature.value if isinstance(feature, Enum) else str(feature)


def validate_quantity(quantity) -> int:
    """Quantities are non-negative integers (bools rejected)."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError(f"Quantity must be a non-negative integer, got {quantity!r}", code="invalid_quantity")
    return quantity


def period_key_for(subscription: Optional[SubscriptionState], now: Optional[datetime] = None) -> str:
    """
    Usage period for a subscription.

    active/past_due subscriptions are metered per billing cycle. The cycle
    length is period_end - period_start; once now passes period_end without a
    renewal (admin assignments never get one) the key moves to the cycle that
    contains now, so counters still roll over. Everything else is metered per
    calendar month.
    """
    normalized_now = _normalize_now(now).astimezone(timezone.utc)
    if subscription is not None and subscription.has_billing_period and subscription.period_start:
        start = as_utc(subscription.period_start)
        end = as_utc(subscription.period_end)
        if end is not None and end > start and normalized_now >= end:
            cycle = end - start
            start = start + cycle * ((normalized_now - start) // cycle)
        return PERIOD_KEY_PREFIX + start.strftime("%Y%m%dT%H%M%S")
    return normalized_now.strftime("%Y-%m")


def _counter_filter(user_id: str, feature: str, period_key: str):
    return and_(
        usage_counters.c.user_id == user_id,
        usage_counters.c.feature == feature,
        usage_counters.c.period_key == period_key,
    )


def _ensure_counter(user_id: str, feature: str, period_key: str, now: datetime) -> None:
    """Create the counter row at 0 if missing (idempotent under races)."""
    with get_db_session() as session:
        existing = session.execute(
            select(usage_counters.c.id).where(_counter_filter(user_id, feature, period_key))
        ).first()
    if existing:
        return
    try:
        with get_db_session() as session:
            session.execute(
                insert(usage_counters).values(
                    user_id=user_id,
                    feature=feature,
                    period_key=period_key,
                    consumed=0,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Another request created it first
        pass


def peek(user_id: str, feature: Union[Enum, str], period_key: str) -> int:
    """Consumed quantity for the period (0 when no counter exists)."""
    feature_key = _feature_key(feature)
    with get_db_session() as session:
        consumed = session.execute(
            select(usage_counters.c.consumed).where(_counter_filter(user_id, feature_key, period_key))
        ).scalar()
    return consumed or 0


def consume(
    user_id: str,
    feature: Union[Enum, str],
    quantity: int,
    period_key: str,
    ceiling: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Atomically add quantity to the counter.

    With a ceiling the increment only happens if consumed + quantity <= ceiling.

    Returns:
        New consumed value, or None if the ceiling would be exceeded.

    Raises:
        ValidationError: quantity is not a non-negative integer
        PersistenceError: datastore unavailable
    """
    validate_quantity(quantity)
    feature_key = _feature_key(feature)
    normalized_now = _normalize_now(now)
    _ensure_counter(user_id, feature_key, period_key, normalized_now)

    with get_db_session() as session:
        stmt = (
            update(usage_counters)
            .where(_counter_filter(user_id, feature_key, period_key))
            .values(consumed=usage_counters.c.consumed + quantity, updated_at=normalized_now)
        )
        if ceiling is not None:
            stmt = stmt.where(usage_counters.c.consumed + quantity <= ceiling)
        result = session.execute(stmt)
        if result.rowcount != 1:
            logger.info(
                "[usage] ceiling reached",
                extra={
                    "user_id": user_id,
                    "feature": feature_key,
                    "period_key": period_key,
                    "requested": quantity,
                    "ceiling": ceiling,
                },
            )
            return None
        # Row is write-locked by this transaction, so the read sees our increment
        new_consumed = session.execute(
            select(usage_counters.c.consumed).where(_counter_filter(user_id, feature_key, period_key))
        ).scalar_one()

    logger.info(
        "[usage] consumed",
        extra={
            "user_id": user_id,
            "feature": feature_key,
            "period_key": period_key,
            "requested": quantity,
            "consumed": new_consumed,
        },
    )
    return new_consumed


def usage_summary(user_id: str, period_key: str) -> Dict[str, int]:
    """Map of feature -> consumed for one period."""
    with get_db_session() as session:
        rows = session.execute(
            select(usage_counters.c.feature, usage_counters.c.consumed)
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.period_key == period_key)
        ).fetchall()
    return {row.feature: row.consumed for row in rows}


def history(user_id: str, feature: Optional[Union[Enum, str]] = None) -> List[UsageCounter]:
    """All counters for a user (old periods are kept), oldest first."""
    query = select(usage_counters).where(usage_counters.c.user_id == user_id)
    if feature is not None:
        query = query.where(usage_counters.c.feature == _feature_key(feature))
    query = query.order_by(usage_counters.c.created_at, usage_counters.c.id)

    with get_db_session() as session:
        rows = session.execute(query).fetchall()

    return [
        UsageCounter(
            user_id=row.user_id,
            feature=row.feature,
            period_key=row.period_key,
            consumed=row.consumed,
            updated_at=as_utc(row.updated_at),
        )
        for row in rows
    ]
