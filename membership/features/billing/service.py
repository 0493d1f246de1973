"""
Billing service orchestrator.

Coordinates:
- Checkout start (provider session, then none -> pending)
- Cancellation at the provider together with ours
- Webhook processing into the lifecycle payment feed
- Plan listing with prices

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from membership.core.config import settings
from membership.core.errors import NotFoundError, StateError, ValidationError
from membership.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from membership.features.billing.stripe_provider import StripeProvider
from membership.features.catalog.service import TierCatalog, parse_tier
from membership.features.subscriptions.ledger import is_recorded
from membership.features.subscriptions.service import (
    LifecycleEvent,
    PaymentEvent,
    SubscriptionLifecycleManager,
    TransitionHook,
)
from membership.features.users.service import get_user
from membership.models.subscription import ACTOR_USER, SubscriptionState, SubscriptionStatus
from membership.models.tier import Tier

logger = logging.getLogger(__name__)

CHECKOUT_ALLOWED_FROM = (SubscriptionStatus.NONE, SubscriptionStatus.CANCELLED)
CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def get_stripe_price_for_tier(tier: Tier) -> Optional[str]:
    """Map internal tier to Stripe price ID."""
    price_map = {
        Tier.PREMIUM: settings.STRIPE_PRICE_PREMIUM,
        Tier.PRO: settings.STRIPE_PRICE_PRO,
    }
    return price_map.get(tier)


def list_plans(catalog: TierCatalog) -> list:
    plans = catalog.describe()
    for plan in plans:
        plan["purchasable"] = bool(get_stripe_price_for_tier(Tier(plan["tier"])))
    return plans


def start_checkout(
    manager: SubscriptionLifecycleManager,
    user_id: str,
    tier: str,
    success_url: str,
    cancel_url: str,
) -> Optional[Dict[str, Any]]:
    """
    Start a checkout session and move the subscription to pending.

    Returns:
        {"url", "session_id", "subscription"}, or None if billing disabled

    Raises:
        ValidationError: free/unknown tier or no Stripe price configured
        StateError: subscription cannot start a checkout
        BillingProviderError: Stripe call failed
    """
    provider = get_provider()
    if not provider:
        return None

    target = parse_tier(tier)
    if target == Tier.FREE:
        raise ValidationError("The free tier cannot be purchased", code="invalid_tier")
    price_id = get_stripe_price_for_tier(target)
    if not price_id:
        raise ValidationError(f"No Stripe price configured for tier: {target.value}", code="price_not_configured")

    # Reject before creating a provider session that could never be confirmed
    current = manager.get_subscription(user_id)
    if current.status not in CHECKOUT_ALLOWED_FROM:
        raise StateError(f"Cannot start checkout from a {current.status.value} subscription")

    user = get_user(user_id)
    customer_id = provider.ensure_customer(user_id, user.email)
    session = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"user_id": user_id, "tier": target.value},
    )
    state = manager.initiate_checkout(user_id, target, session.session_id)

    logger.info(
        "[billing] checkout started",
        extra={"user_id": user_id, "tier": target.value, "session_id": session.session_id},
    )
    return {"url": session.url, "session_id": session.session_id, "subscription": state}


def cancel_subscription(
    manager: SubscriptionLifecycleManager,
    user_id: str,
    *,
    actor: str = ACTOR_USER,
    reason: Optional[str] = None,
    immediate: Optional[bool] = None,
    now: Optional[datetime] = None,
    on_write: Optional[TransitionHook] = None,
) -> SubscriptionState:
    """
    Cancel the subscription here and at the payment provider.

    The provider goes first: if it fails nothing changes locally and the
    caller can retry. A cancellation deferred to period end is mirrored as
    cancel-at-period-end at the provider.

    Raises:
        StateError: nothing to cancel
        BillingProviderError: provider call failed
    """
    state = manager.refresh(user_id, now)
    if state.status in CANCELLABLE_STATUSES and state.provider_subscription_id:
        at_period_end = manager.defers_cancellation(
            state, actor, now or datetime.now(timezone.utc), immediate=immediate
        )
        provider = get_provider()
        if provider is None:
            logger.warning(
                "[billing] provider cancellation skipped, billing disabled",
                extra={"user_id": user_id, "subscription_id": state.provider_subscription_id},
            )
        else:
            provider.cancel_subscription(state.provider_subscription_id, at_period_end=at_period_end)
            logger.info(
                "[billing] provider subscription cancelled",
                extra={
                    "user_id": user_id,
                    "subscription_id": state.provider_subscription_id,
                    "at_period_end": at_period_end,
                    "actor": actor,
                },
            )

    return manager.cancel(user_id, actor=actor, reason=reason, immediate=immediate, now=now, on_write=on_write)


def process_webhook(
    manager: SubscriptionLifecycleManager,
    headers: Dict[str, str],
    body: bytes,
) -> Dict[str, Any]:
    """
    Verify a provider webhook and feed it to the lifecycle manager.

    Events that cannot be applied (unknown user, invalid transition, bad tier)
    are acknowledged as rejected so the provider stops redelivering them.
    Datastore failures propagate so the provider retries.

    Raises:
        BillingWebhookError: billing disabled, bad signature or payload
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    response: Dict[str, Any] = {"event_id": result.event_id, "event_type": result.event_type}

    if result.lifecycle_event is None:
        logger.info("[billing] webhook ignored", extra={"event_id": result.event_id, "event_type": result.event_type})
        return {**response, "status": "ignored"}

    if not result.user_id or not result.payment_reference:
        logger.warning(
            "[billing] webhook missing user or reference",
            extra={"event_id": result.event_id, "event_type": result.event_type},
        )
        return {**response, "status": "rejected", "code": "unresolved_event"}

    if is_recorded(result.lifecycle_event, result.payment_reference):
        logger.info(
            "[billing] webhook already processed",
            extra={"event_id": result.event_id, "payment_reference": result.payment_reference},
        )
        return {**response, "status": "duplicate"}

    try:
        event = PaymentEvent(
            type=LifecycleEvent(result.lifecycle_event),
            payment_reference=result.payment_reference,
            user_id=result.user_id,
            tier=parse_tier(result.tier) if result.tier else None,
            period_end=result.period_end,
            provider_subscription_id=result.subscription_id,
        )
        state = manager.handle_payment_event(event)
    except (StateError, NotFoundError, ValidationError) as exc:
        logger.warning(
            "[billing] webhook rejected",
            extra={
                "event_id": result.event_id,
                "event_type": result.event_type,
                "user_id": result.user_id,
                "error_code": exc.code,
            },
        )
        return {**response, "status": "rejected", "code": exc.code}

    return {
        **response,
        "status": "applied",
        "subscription_status": state.status.value,
        "tier": state.tier.value,
    }
