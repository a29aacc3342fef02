"""
Payment provider protocol.

Defines the interface the webhook processor and checkout orchestrator use,
so business logic never imports the Stripe SDK directly.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from datemaker.core.errors import InvalidSignatureError, ProviderRejectedError, ProviderUnavailableError


class BillingProviderError(ProviderUnavailableError):
    """Provider API call failed or timed out."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("provider", "stripe")
        super().__init__(message, **kwargs)


class BillingRequestError(ProviderRejectedError):
    """Provider rejected the request, e.g. an unknown object or invalid key."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("provider", "stripe")
        super().__init__(message, **kwargs)


class BillingWebhookError(InvalidSignatureError):
    """Webhook signature invalid, missing, or payload undecodable."""


@dataclass
class CheckoutSession:
    session_id: str
    url: Optional[str]


class BillingProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Webhook signature verification and decoding
    - Subscription retrieval and cancellation scheduling
    - Checkout and portal session creation
    """

    def verify_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature over the raw payload and decode the event.

        Raises:
            BillingWebhookError: signature missing/invalid or payload not an event
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription as a plain dict.

        Raises:
            BillingProviderError: provider unreachable, rate limited or failing
            BillingRequestError: request rejected (e.g. no such subscription)
        """
        ...

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
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Return the billing portal URL for a customer."""
        ...

    def schedule_cancellation(self, subscription_id: str) -> Dict[str, Any]:
        """Set cancel-at-period-end and return the updated subscription."""
        ...
