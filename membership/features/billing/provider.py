"""
Seam between the membership lifecycle and a payment provider.

The lifecycle only ever sees BillingWebhookResult; Stripe specifics stay
in stripe_provider.py.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class CheckoutSession:
    """A hosted checkout started with the provider."""
    session_id: str
    url: Optional[str]


@dataclass
class BillingWebhookResult:
    """
    Provider webhook normalized to the payment feed.

    lifecycle_event is None for provider events that do not affect
    subscriptions (they are acknowledged and ignored).
    """
    event_id: str
    event_type: str
    lifecycle_event: Optional[str]
    user_id: Optional[str]
    payment_reference: Optional[str]
    tier: Optional[str]
    period_end: Optional[datetime]
    subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """What start_checkout and handle_webhook need from a provider."""

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Provider customer id for the user, created on first use."""
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> CheckoutSession:
        """Start a hosted subscription checkout (BillingProviderError on failure)."""
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify the signature and normalize the event (BillingWebhookError otherwise)."""
        ...

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        """Stop billing now, or let the subscription lapse at period end."""
        ...


class BillingProviderError(Exception):
    """Provider call failed or billing is not configured."""


class BillingWebhookError(BillingProviderError):
    """Webhook could not be verified or parsed."""
