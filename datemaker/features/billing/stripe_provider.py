"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with the Stripe SDK. Webhook
payloads are verified against the raw request bytes and then decoded as
plain JSON, so handlers work with dicts regardless of SDK object model.
"""
import json
import logging
import os
from typing import Any, Dict, Optional

import stripe

from datemaker.features.billing.provider import (
    BillingProviderError,
    BillingRequestError,
    BillingWebhookError,
    CheckoutSession,
)

logger = logging.getLogger("datemaker")

# Errors that may succeed when the same call is repeated
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def stripe_object_to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe SDK object into a plain dictionary."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def provider_error(action: str, error: Exception):
    """Map a Stripe SDK error to a transient or a rejected provider error."""
    name = error.__class__.__name__
    http_status = getattr(error, "http_status", None)
    if isinstance(error, TRANSIENT_STRIPE_ERRORS) or (http_status is not None and http_status >= 500):
        return BillingProviderError(f"Stripe {action} failed: {name}")
    return BillingRequestError(f"Stripe {action} rejected: {name}")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Callers surface failures instead of retrying
        stripe.max_network_retries = 0

    def verify_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature and decode the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise BillingWebhookError("Invalid payload encoding")

        try:
            stripe.WebhookSignature.verify_header(
                text, signature_header, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook.signature_invalid", extra={"reason": str(e)[:200]})
            raise BillingWebhookError("Invalid signature")

        try:
            event = json.loads(text)
        except ValueError:
            raise BillingWebhookError("Invalid payload")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Payload is not an event")
        return event

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise provider_error("subscription retrieval", e) from e
        return stripe_object_to_dict(subscription)

    def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        customer_email: Optional[str] = None,
        trial_period_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session in subscription mode."""
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
            "metadata": metadata or {},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if trial_period_days:
            params["subscription_data"] = {
                "trial_period_days": trial_period_days,
                "metadata": metadata or {},
            }
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise provider_error("checkout session creation", e) from e
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise provider_error("portal session creation", e) from e
        return session.url

    def schedule_cancellation(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise provider_error("cancellation", e) from e
        return stripe_object_to_dict(subscription)
