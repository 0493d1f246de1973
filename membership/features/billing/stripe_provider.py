"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API and maps Stripe
webhook events onto the subscription payment feed:

- checkout.session.completed     -> checkout_confirmed (reference: session id)
- checkout.session.expired       -> checkout_failed    (reference: session id)
- invoice.payment_succeeded      -> renewal_confirmed  (reference: invoice id)
- invoice.payment_failed         -> renewal_failed     (reference: invoice id)
- customer.subscription.deleted  -> cancelled          (reference: subscription id)

The Stripe subscription id travels with every mapped event so a later
user or admin cancellation can stop billing at Stripe as well.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from membership.core.config import settings
from membership.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSession,
)

# Invoices raised when a subscription is first created are covered by
# checkout.session.completed, not by a renewal.
INITIAL_INVOICE_REASONS = {"subscription_create"}


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create or retrieve Stripe customer for user."""
        try:
            existing = stripe.Customer.search(query=f"metadata['user_id']:'{user_id}'", limit=1)
            if existing.data:
                return existing.data[0].id

            customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
            if email:
                customer_data["email"] = email
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> CheckoutSession:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                subscription_data={"metadata": metadata or {}},
            )
            return CheckoutSession(session_id=session.id, url=session.url)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self.parse_event(event)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        """Cancel at Stripe; at_period_end keeps the paid period running."""
        try:
            if at_period_end:
                stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")

    def parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Map a verified Stripe event onto the payment feed."""
        event_type = event.get("type", "")
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})

        lifecycle_event = None
        reference = data.get("id")
        period_end = None
        tier = metadata.get("tier")
        subscription_id = data.get("subscription")

        if event_type == "checkout.session.completed":
            lifecycle_event = "checkout_confirmed"
        elif event_type == "checkout.session.expired":
            lifecycle_event = "checkout_failed"
        elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            if data.get("billing_reason") not in INITIAL_INVOICE_REASONS:
                lifecycle_event = (
                    "renewal_confirmed" if event_type == "invoice.payment_succeeded" else "renewal_failed"
                )
            # Invoice metadata is empty; the subscription carries ours
            parent_metadata = (data.get("subscription_details") or {}).get("metadata") or {}
            metadata = {**parent_metadata, **metadata}
            tier = metadata.get("tier")
            # Newer API versions nest the subscription under parent
            parent_details = (data.get("parent") or {}).get("subscription_details") or {}
            subscription_id = subscription_id or parent_details.get("subscription")
            lines = (data.get("lines") or {}).get("data") or []
            if lines:
                period_end = _from_timestamp((lines[0].get("period") or {}).get("end"))
                price_id = (lines[0].get("price") or {}).get("id")
                tier = tier or self._map_price_to_tier(price_id)
        elif event_type == "customer.subscription.deleted":
            lifecycle_event = "cancelled"
            subscription_id = data.get("id")
            period_end = _from_timestamp(data.get("current_period_end"))

        user_id = metadata.get("user_id")
        if lifecycle_event and not user_id:
            user_id = self._lookup_user_id(data.get("customer"))

        return BillingWebhookResult(
            event_id=event.get("id", ""),
            event_type=event_type,
            lifecycle_event=lifecycle_event,
            user_id=user_id,
            payment_reference=reference,
            tier=tier,
            period_end=period_end,
            subscription_id=subscription_id,
            metadata=metadata,
        )

    def _lookup_user_id(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise BillingWebhookError(f"Could not resolve customer {customer_id}: {e}")
        return (customer.metadata or {}).get("user_id")

    def _map_price_to_tier(self, price_id: Optional[str]) -> Optional[str]:
        """Map Stripe price ID to internal tier."""
        price_map = {
            settings.STRIPE_PRICE_PREMIUM: "premium",
            settings.STRIPE_PRICE_PRO: "pro",
        }
        price_map.pop(None, None)
        return price_map.get(price_id)
