"""
membership/features/subscriptions/service.py

Subscription lifecycle manager.

Handles:
- The subscription state machine (none, pending, active, past_due, cancelled)
- Payment event feed with (type, payment_reference) deduplication
- Admin assignment through the same transition path
- Lazy maintenance (grace expiry, deferred cancellation) and sweeps
- Append-only transition history
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import logging
from sqlalchemy import select, insert, update, and_, or_
from sqlalchemy.orm import Session

from membership.core.config import LifecyclePolicy
from membership.core.database import (
    get_db_session,
    subscriptions,
    subscription_history,
    as_utc,
)
from membership.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionError,
    StateError,
    ValidationError,
)
from membership.features.catalog.service import parse_tier
from membership.features.subscriptions.ledger import (
    DuplicatePaymentEventError,
    payload_hash,
    record_payment_event,
)
from membership.models.subscription import (
    ACTOR_PAYMENT,
    ACTOR_SYSTEM,
    ACTOR_USER,
    HistoryEntry,
    SubscriptionState,
    SubscriptionStatus,
    is_admin_actor,
)
from membership.models.tier import Tier


logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    CHECKOUT_INITIATED = "checkout_initiated"
    CHECKOUT_CONFIRMED = "checkout_confirmed"
    CHECKOUT_FAILED = "checkout_failed"
    RENEWAL_CONFIRMED = "renewal_confirmed"
    RENEWAL_FAILED = "renewal_failed"
    GRACE_ELAPSED = "grace_elapsed"
    CANCELLED = "cancelled"
    ADMIN_ASSIGNED = "admin_assigned"


# Event types delivered by the payment provider feed
PAYMENT_EVENT_TYPES = frozenset({
    LifecycleEvent.CHECKOUT_CONFIRMED,
    LifecycleEvent.CHECKOUT_FAILED,
    LifecycleEvent.RENEWAL_CONFIRMED,
    LifecycleEvent.RENEWAL_FAILED,
    LifecycleEvent.CANCELLED,
})

# Events a user may trigger directly; the rest come from payments, admins or the clock
USER_EVENT_TYPES = frozenset({
    LifecycleEvent.CHECKOUT_INITIATED,
    LifecycleEvent.CANCELLED,
})


def parse_event(value: Union[LifecycleEvent, str]) -> LifecycleEvent:
    if isinstance(value, LifecycleEvent):
        return value
    try:
        return LifecycleEvent(value)
    except ValueError:
        raise ValidationError(f"Unknown lifecycle event: {value!r}", code="unknown_event")


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _parse_datetime(value: Any, field: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return _normalize_now(value) if value is not None else None
    if isinstance(value, str):
        try:
            return _normalize_now(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO-8601 timestamp", code="invalid_payload")


@dataclass(frozen=True)
class TransitionPayload:
    payment_reference: Optional[str] = None
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None
    reason: Optional[str] = None
    immediate: Optional[bool] = None
    provider_subscription_id: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Union["TransitionPayload", Dict[str, Any], None]) -> "TransitionPayload":
        """Accept a payload object or a dict with camelCase or snake_case keys."""
        if raw is None:
            return cls()
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError("Transition payload must be an object", code="invalid_payload")

        def pick(*keys):
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return None

        reference = pick("paymentReference", "payment_reference")
        if reference is not None and not isinstance(reference, str):
            raise ValidationError("paymentReference must be a string", code="invalid_payload")
        provider_subscription_id = pick("providerSubscriptionId", "provider_subscription_id")
        if provider_subscription_id is not None and not isinstance(provider_subscription_id, str):
            raise ValidationError("providerSubscriptionId must be a string", code="invalid_payload")
        tier = pick("tier")
        immediate = pick("immediate")
        if immediate is not None and not isinstance(immediate, bool):
            raise ValidationError("immediate must be a boolean", code="invalid_payload")
        return cls(
            payment_reference=reference,
            tier=parse_tier(tier) if tier is not None else None,
            period_end=_parse_datetime(pick("periodEnd", "period_end"), "periodEnd"),
            reason=pick("reason"),
            immediate=immediate,
            provider_subscription_id=provider_subscription_id,
        )


@dataclass(frozen=True)
class PaymentEvent:
    """One entry of the payment provider feed."""
    type: LifecycleEvent
    payment_reference: str
    user_id: str
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None


# Extra writes committed in the same transaction as a transition
TransitionHook = Callable[[Session, SubscriptionState], None]


class TierCache:
    """
    Request-scoped subscription lookups.

    Evaluations within one request read the subscription once; every
    lifecycle transition invalidates the user's entry.
    """

    def __init__(self):
        self._entries: Dict[str, SubscriptionState] = {}

    def get(self, user_id: str) -> Optional[SubscriptionState]:
        return self._entries.get(user_id)

    def put(self, state: SubscriptionState) -> None:
        self._entries[state.user_id] = state

    def invalidate(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries


def _row_to_state(row) -> SubscriptionState:
    return SubscriptionState(
        user_id=row.user_id,
        tier=Tier(row.tier),
        status=SubscriptionStatus(row.status),
        period_start=as_utc(row.period_start),
        period_end=as_utc(row.period_end),
        payment_reference=row.payment_reference,
        provider_subscription_id=row.provider_subscription_id,
        pending_tier=Tier(row.pending_tier) if row.pending_tier else None,
        cancel_requested=bool(row.cancel_requested),
        past_due_since=as_utc(row.past_due_since),
        admin_marker=bool(row.admin_marker),
        admin_reason=row.admin_reason,
        version=row.version,
        updated_at=as_utc(row.updated_at),
    )


def _require_paid_tier(tier: Optional[Tier], event: LifecycleEvent) -> Tier:
    if tier is None:
        raise ValidationError(f"{event.value} requires a tier", code="invalid_payload")
    if tier == Tier.FREE:
        raise ValidationError(f"{event.value} requires a paid tier", code="invalid_payload")
    return tier


class SubscriptionLifecycleManager:
    """
    Owns every subscription state change.

    Payment events, user actions, admin overrides and lazy maintenance all go
    through transition(), which validates the move, re-checks invariants,
    writes the new state with a compare-and-set on version, appends a
    history row and invalidates the tier cache.
    """

    def __init__(
        self,
        policy: Optional[LifecyclePolicy] = None,
        tier_cache: Optional[TierCache] = None,
    ):
        self.policy = policy or LifecyclePolicy.from_settings()
        self.tier_cache = tier_cache if tier_cache is not None else TierCache()

    # Reads

    def get_subscription(self, user_id: str) -> SubscriptionState:
        """Stored state, without lazy maintenance."""
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
        if not row:
            raise NotFoundError(f"No subscription for user {user_id}", code="subscription_not_found")
        return _row_to_state(row)

    def current(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionState:
        """Effective state for entitlement checks (cached per request)."""
        normalized_now = _normalize_now(now)
        cached = self.tier_cache.get(user_id)
        if cached is not None and self._maintenance_event(cached, normalized_now) is None:
            return cached
        state = self.refresh(user_id, normalized_now)
        self.tier_cache.put(state)
        return state

    def history(self, user_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Transition log, most recent first."""
        query = (
            select(subscription_history)
            .where(subscription_history.c.user_id == user_id)
            .order_by(subscription_history.c.occurred_at.desc(), subscription_history.c.id.desc())
        )
        if limit:
            query = query.limit(limit)
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
        return [
            HistoryEntry(
                user_id=row.user_id,
                event=row.event,
                from_status=SubscriptionStatus(row.from_status) if row.from_status else None,
                to_status=SubscriptionStatus(row.to_status),
                from_tier=Tier(row.from_tier) if row.from_tier else None,
                to_tier=Tier(row.to_tier),
                period_start=as_utc(row.period_start),
                period_end=as_utc(row.period_end),
                payment_reference=row.payment_reference,
                actor=row.actor,
                admin_action=bool(row.admin_action),
                reason=row.reason,
                occurred_at=as_utc(row.occurred_at),
            )
            for row in rows
        ]

    # Transitions

    def transition(
        self,
        user_id: str,
        event: Union[LifecycleEvent, str],
        payload: Union[TransitionPayload, Dict[str, Any], None] = None,
        *,
        actor: str = ACTOR_USER,
        now: Optional[datetime] = None,
        on_write: Optional[TransitionHook] = None,
    ) -> SubscriptionState:
        """
        Apply one lifecycle event.

        Payment events carrying a payment reference are deduplicated on
        (event, reference); a replay returns the current state unchanged.
        Admin actors bypass deduplication. on_write runs inside the
        transition's transaction, after the history row is written.

        Raises:
            ValidationError: unknown event or malformed payload
            StateError: event not valid for the current state
            PermissionError: admin_assigned from a non-admin actor, or a
                payment/system event from the user
            NotFoundError: unknown user
            PersistenceError: datastore unavailable
        """
        lifecycle_event = parse_event(event)
        body = TransitionPayload.coerce(payload)
        normalized_now = _normalize_now(now)

        if lifecycle_event == LifecycleEvent.ADMIN_ASSIGNED and not is_admin_actor(actor):
            raise PermissionError("admin_assigned requires an admin actor", code="admin_required")
        if actor == ACTOR_USER and lifecycle_event not in USER_EVENT_TYPES:
            raise PermissionError(
                f"{lifecycle_event.value} cannot be triggered by the user",
                code="event_not_permitted",
            )

        dedupe = (
            actor == ACTOR_PAYMENT
            and lifecycle_event in PAYMENT_EVENT_TYPES
            and bool(body.payment_reference)
        )
        try:
            return self._apply(user_id, lifecycle_event, body, actor, normalized_now, dedupe, on_write)
        except DuplicatePaymentEventError:
            logger.info(
                "[lifecycle] duplicate payment event ignored",
                extra={
                    "user_id": user_id,
                    "event": lifecycle_event.value,
                    "payment_reference": body.payment_reference,
                },
            )
            return self.get_subscription(user_id)

    def _apply(
        self,
        user_id: str,
        event: LifecycleEvent,
        body: TransitionPayload,
        actor: str,
        now: datetime,
        dedupe: bool,
        on_write: Optional[TransitionHook] = None,
    ) -> SubscriptionState:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
            if not row:
                raise NotFoundError(f"No subscription for user {user_id}", code="subscription_not_found")
            current = _row_to_state(row)

            if dedupe:
                record_payment_event(
                    session,
                    event_type=event.value,
                    payment_reference=body.payment_reference,
                    user_id=user_id,
                    received_at=now,
                    digest=payload_hash({
                        "tier": body.tier.value if body.tier else None,
                        "period_end": body.period_end,
                    }),
                )

            try:
                target = self._next_state(current, event, body, actor, now)
                target.check_invariants()
            except StateError as exc:
                logger.warning(
                    "[lifecycle] transition rejected",
                    extra={
                        "user_id": user_id,
                        "event": event.value,
                        "status": current.status.value,
                        "actor": actor,
                        "error_code": exc.code,
                    },
                )
                raise

            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.version == current.version)
                .values(
                    tier=target.tier.value,
                    status=target.status.value,
                    period_start=target.period_start,
                    period_end=target.period_end,
                    payment_reference=target.payment_reference,
                    provider_subscription_id=target.provider_subscription_id,
                    pending_tier=target.pending_tier.value if target.pending_tier else None,
                    cancel_requested=target.cancel_requested,
                    past_due_since=target.past_due_since,
                    admin_marker=target.admin_marker,
                    admin_reason=target.admin_reason,
                    version=current.version + 1,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise ConflictError(
                    f"Subscription for {user_id} changed concurrently; retry",
                    code="concurrent_update",
                )

            session.execute(
                insert(subscription_history).values(
                    user_id=user_id,
                    event=event.value,
                    from_status=current.status.value,
                    to_status=target.status.value,
                    from_tier=current.tier.value,
                    to_tier=target.tier.value,
                    period_start=target.period_start,
                    period_end=target.period_end,
                    payment_reference=body.payment_reference or target.payment_reference,
                    actor=actor,
                    admin_action=is_admin_actor(actor),
                    reason=body.reason,
                    occurred_at=now,
                )
            )
            if on_write is not None:
                on_write(session, target)

        self.tier_cache.invalidate(user_id)
        logger.info(
            "[lifecycle] transition",
            extra={
                "user_id": user_id,
                "event": event.value,
                "from_status": current.status.value,
                "to_status": target.status.value,
                "from_tier": current.tier.value,
                "to_tier": target.tier.value,
                "actor": actor,
            },
        )
        return target.model_copy(update={"version": current.version + 1, "updated_at": now})

    def _next_state(
        self,
        current: SubscriptionState,
        event: LifecycleEvent,
        body: TransitionPayload,
        actor: str,
        now: datetime,
    ) -> SubscriptionState:
        """Pure state machine step. Raises StateError for invalid moves."""
        status = current.status
        admin = is_admin_actor(actor)
        marker = {
            "admin_marker": admin,
            "admin_reason": body.reason if admin else None,
        }

        def invalid(detail: str = "") -> StateError:
            suffix = f": {detail}" if detail else ""
            return StateError(f"Cannot apply {event.value} to a {status.value} subscription{suffix}")

        if event == LifecycleEvent.CHECKOUT_INITIATED:
            if status not in (SubscriptionStatus.NONE, SubscriptionStatus.CANCELLED):
                raise invalid()
            tier = _require_paid_tier(body.tier, event)
            if not body.payment_reference:
                raise ValidationError("checkout_initiated requires a paymentReference", code="invalid_payload")
            return current.model_copy(update={
                "status": SubscriptionStatus.PENDING,
                "tier": Tier.FREE,
                "pending_tier": tier,
                "payment_reference": body.payment_reference,
                "provider_subscription_id": None,
                "period_start": None,
                "period_end": None,
                "cancel_requested": False,
                "past_due_since": None,
                **marker,
            })

        if event == LifecycleEvent.CHECKOUT_CONFIRMED:
            if status == SubscriptionStatus.ACTIVE:
                raise invalid("subscription is already active")
            if status != SubscriptionStatus.PENDING:
                raise invalid()
            if body.payment_reference != current.payment_reference:
                raise invalid("payment reference does not match the pending checkout")
            tier = _require_paid_tier(body.tier or current.pending_tier, event)
            return current.model_copy(update={
                "status": SubscriptionStatus.ACTIVE,
                "tier": tier,
                "pending_tier": None,
                "provider_subscription_id": body.provider_subscription_id,
                "period_start": now,
                "period_end": body.period_end or now + self.policy.billing_interval,
                "cancel_requested": False,
                "past_due_since": None,
                **marker,
            })

        if event == LifecycleEvent.CHECKOUT_FAILED:
            if status != SubscriptionStatus.PENDING:
                raise invalid()
            if body.payment_reference and body.payment_reference != current.payment_reference:
                raise invalid("payment reference does not match the pending checkout")
            return current.model_copy(update={
                "status": SubscriptionStatus.NONE,
                "tier": Tier.FREE,
                "pending_tier": None,
                "payment_reference": None,
                "period_start": None,
                "period_end": None,
                **marker,
            })

        if event == LifecycleEvent.RENEWAL_CONFIRMED:
            if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                raise invalid()
            start = current.period_end or now
            tier = _require_paid_tier(body.tier, event) if body.tier else current.tier
            return current.model_copy(update={
                "status": SubscriptionStatus.ACTIVE,
                "tier": tier,
                "period_start": start,
                "period_end": body.period_end or start + self.policy.billing_interval,
                "payment_reference": body.payment_reference or current.payment_reference,
                "provider_subscription_id": body.provider_subscription_id or current.provider_subscription_id,
                "past_due_since": None,
                **marker,
            })

        if event == LifecycleEvent.RENEWAL_FAILED:
            if status != SubscriptionStatus.ACTIVE:
                raise invalid()
            return current.model_copy(update={
                "status": SubscriptionStatus.PAST_DUE,
                "past_due_since": now,
                **marker,
            })

        if event == LifecycleEvent.GRACE_ELAPSED:
            if status != SubscriptionStatus.PAST_DUE:
                raise invalid()
            if not self._grace_expired(current, now):
                raise invalid("grace period has not elapsed")
            return self._cancelled(current, marker)

        if event == LifecycleEvent.CANCELLED:
            if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                raise invalid()
            if self.defers_cancellation(current, actor, now, immediate=body.immediate):
                return current.model_copy(update={"cancel_requested": True, **marker})
            return self._cancelled(current, marker)

        if event == LifecycleEvent.ADMIN_ASSIGNED:
            tier = _require_paid_tier(body.tier, event)
            return current.model_copy(update={
                "status": SubscriptionStatus.ACTIVE,
                "tier": tier,
                "pending_tier": None,
                "period_start": now,
                "period_end": body.period_end or now + self.policy.billing_interval,
                "cancel_requested": False,
                "past_due_since": None,
                **marker,
            })

        raise invalid()

    @staticmethod
    def _cancelled(current: SubscriptionState, marker: Dict[str, Any]) -> SubscriptionState:
        return current.model_copy(update={
            "status": SubscriptionStatus.CANCELLED,
            "tier": Tier.FREE,
            "pending_tier": None,
            "provider_subscription_id": None,
            "period_start": None,
            "period_end": None,
            "cancel_requested": False,
            "past_due_since": None,
            **marker,
        })

    def _grace_expired(self, state: SubscriptionState, now: datetime) -> bool:
        if state.past_due_since is None:
            return True
        return now >= state.past_due_since + self.policy.grace_period

    def defers_cancellation(
        self,
        current: SubscriptionState,
        actor: str,
        now: datetime,
        *,
        immediate: Optional[bool] = None,
    ) -> bool:
        """Whether a cancel by actor only takes effect at the end of the period."""
        if immediate or not self.policy.defers_cancellation:
            return False
        if actor not in (ACTOR_USER, ACTOR_PAYMENT):
            return False
        if current.status != SubscriptionStatus.ACTIVE or current.period_end is None:
            return False
        return now < current.period_end

    # Entry points

    def initiate_checkout(
        self,
        user_id: str,
        tier: Union[Tier, str],
        payment_reference: str,
        *,
        now: Optional[datetime] = None,
    ) -> SubscriptionState:
        return self.transition(
            user_id,
            LifecycleEvent.CHECKOUT_INITIATED,
            TransitionPayload(payment_reference=payment_reference, tier=parse_tier(tier)),
            actor=ACTOR_USER,
            now=now,
        )

    def handle_payment_event(self, event: PaymentEvent, *, now: Optional[datetime] = None) -> SubscriptionState:
        """Consume one payment feed entry (idempotent per type and reference)."""
        event_type = parse_event(event.type)
        if event_type not in PAYMENT_EVENT_TYPES:
            raise ValidationError(f"{event_type.value} is not a payment event", code="invalid_event")
        if not event.payment_reference:
            raise ValidationError("Payment events require a payment reference", code="invalid_payload")
        return self.transition(
            event.user_id,
            event_type,
            TransitionPayload(
                payment_reference=event.payment_reference,
                tier=parse_tier(event.tier) if event.tier else None,
                period_end=_normalize_now(event.period_end) if event.period_end else None,
                provider_subscription_id=event.provider_subscription_id,
            ),
            actor=ACTOR_PAYMENT,
            now=now,
        )

    def cancel(
        self,
        user_id: str,
        *,
        actor: str = ACTOR_USER,
        reason: Optional[str] = None,
        immediate: Optional[bool] = None,
        now: Optional[datetime] = None,
        on_write: Optional[TransitionHook] = None,
    ) -> SubscriptionState:
        return self.transition(
            user_id,
            LifecycleEvent.CANCELLED,
            TransitionPayload(reason=reason, immediate=immediate),
            actor=actor,
            now=now,
            on_write=on_write,
        )

    # Maintenance

    def _maintenance_event(self, state: SubscriptionState, now: datetime) -> Optional[LifecycleEvent]:
        if state.status == SubscriptionStatus.PAST_DUE and self._grace_expired(state, now):
            return LifecycleEvent.GRACE_ELAPSED
        if (
            state.status == SubscriptionStatus.ACTIVE
            and state.cancel_requested
            and state.period_end is not None
            and now >= state.period_end
        ):
            return LifecycleEvent.CANCELLED
        return None

    def refresh(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionState:
        """Apply any transition that is due by the clock, then return the state."""
        normalized_now = _normalize_now(now)
        state = self.get_subscription(user_id)
        event = self._maintenance_event(state, normalized_now)
        if event is None:
            return state
        reason = "grace period elapsed" if event == LifecycleEvent.GRACE_ELAPSED else "end of billing period"
        try:
            return self.transition(
                user_id,
                event,
                TransitionPayload(reason=reason, immediate=True),
                actor=ACTOR_SYSTEM,
                now=normalized_now,
            )
        except (StateError, ConflictError):
            # Another request applied it first
            logger.info(
                "[lifecycle] maintenance raced, re-reading",
                extra={"user_id": user_id, "event": event.value},
            )
            return self.get_subscription(user_id)

    def sweep(self, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, Any]:
        """Run lazy maintenance for every subscription that is due."""
        normalized_now = _normalize_now(now)
        grace_cutoff = normalized_now - self.policy.grace_period
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions.c.user_id)
                .where(
                    or_(
                        and_(
                            subscriptions.c.status == SubscriptionStatus.PAST_DUE.value,
                            or_(
                                subscriptions.c.past_due_since.is_(None),
                                subscriptions.c.past_due_since <= grace_cutoff,
                            ),
                        ),
                        and_(
                            subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                            subscriptions.c.cancel_requested == True,
                            subscriptions.c.period_end <= normalized_now,
                        ),
                    )
                )
                .order_by(subscriptions.c.user_id)
                .limit(limit)
            ).fetchall()

        transitioned = []
        for row in rows:
            before = self.get_subscription(row.user_id)
            after = self.refresh(row.user_id, normalized_now)
            if after.status != before.status:
                transitioned.append({
                    "user_id": row.user_id,
                    "from_status": before.status.value,
                    "to_status": after.status.value,
                })

        logger.info(
            "[lifecycle] sweep complete",
            extra={"examined": len(rows), "transitions": len(transitioned)},
        )
        return {
            "examined": len(rows),
            "transitions": transitioned,
            "timestamp": normalized_now.isoformat(),
        }
