"""
Checkout, portal and cancellation orchestration.

Creates provider-side sessions for a user. Entitlement changes caused by a
completed checkout arrive later through webhooks; the only ledger write
here is the cancellation-pending stamp.
"""
import logging
from typing import Any, Dict, Optional

from datemaker.core.errors import BillingDisabledError, ValidationError
from datemaker.core.logging import log_event
from datemaker.features.billing.provider import BillingProvider, BillingProviderError
from datemaker.features.billing.webhooks import period_end
from datemaker.features.ledger.service import SubscriptionLedger

logger = logging.getLogger("datemaker")

ANNUAL_PLANS = {"annual", "yearly"}


class CheckoutOrchestrator:
    def __init__(self, provider: Optional[BillingProvider], ledger: SubscriptionLedger, cfg):
        self.provider = provider
        self.ledger = ledger
        self.cfg = cfg

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")
        return self.provider

    def price_for_plan(self, plan: str) -> str:
        if plan in ANNUAL_PLANS:
            price_id = self.cfg.STRIPE_ANNUAL_PRICE_ID
        else:
            price_id = self.cfg.STRIPE_MONTHLY_PRICE_ID
        if not price_id:
            raise BillingProviderError(f"Price ID not configured for plan: {plan}")
        return price_id

    def _start_session(
        self,
        user_id: str,
        plan: str,
        email: Optional[str],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        provider = self._require_provider()
        # Webhooks patch this record once checkout completes
        record = self.ledger.ensure_user(user_id, email=email)
        if record.payment_provider_subscription_id:
            raise ValidationError("User already has an active subscription")

        session = provider.create_checkout_session(
            price_id=self.price_for_plan(plan),
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            customer_email=email or record.email,
            trial_period_days=self.cfg.CHECKOUT_TRIAL_DAYS,
            metadata=metadata,
        )
        log_event(
            "info",
            "checkout.session_created",
            user_id=user_id,
            extra={"session_id": session.session_id, "plan": plan, "source": metadata.get("source", "app")},
        )
        return {"sessionId": session.session_id, "url": session.url}

    def create_checkout_session(
        self,
        user_id: str,
        plan: str = "monthly",
        email: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Dict[str, Any]:
        if platform == "ios":
            success_url = self.cfg.IOS_CHECKOUT_SUCCESS_URL
            cancel_url = self.cfg.IOS_CHECKOUT_CANCEL_URL
        else:
            success_url = f"{self.cfg.FRONTEND_URL}?checkout=success"
            cancel_url = f"{self.cfg.FRONTEND_URL}?checkout=cancelled"
        return self._start_session(
            user_id, plan, email, success_url, cancel_url, {"userId": user_id, "plan": plan}
        )

    def create_web_checkout(self, user_id: str, plan: str = "monthly", email: Optional[str] = None) -> Dict[str, Any]:
        """Checkout started from the website rather than inside the app."""
        success_url = self.cfg.WEB_CHECKOUT_SUCCESS_URL or (
            f"{self.cfg.FRONTEND_URL}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
        )
        cancel_url = self.cfg.WEB_CHECKOUT_CANCEL_URL or f"{self.cfg.FRONTEND_URL}/#/subscribe?canceled=true"
        return self._start_session(
            user_id,
            plan,
            email,
            success_url,
            cancel_url,
            {"userId": user_id, "plan": plan, "source": "web"},
        )

    def create_portal_session(self, user_id: str) -> Dict[str, Any]:
        provider = self._require_provider()
        record = self.ledger.get_entitlement(user_id)
        if not record.payment_provider_customer_id:
            raise ValidationError("No Stripe customer found for this user")
        url = provider.create_portal_session(record.payment_provider_customer_id, self.cfg.FRONTEND_URL)
        log_event("info", "checkout.portal_created", user_id=user_id)
        return {"url": url}

    def cancel_subscription(self, user_id: str) -> Dict[str, Any]:
        """Schedule cancellation at period end and stamp it on the ledger."""
        provider = self._require_provider()
        record = self.ledger.get_entitlement(user_id)
        subscription_id = record.payment_provider_subscription_id
        if not subscription_id:
            raise ValidationError("No active subscription found")

        current = provider.retrieve_subscription(subscription_id)
        if current.get("cancel_at_period_end"):
            cancel_at = period_end(current)
            when = cancel_at.date().isoformat() if cancel_at else "end of billing period"
            raise ValidationError(
                f"Subscription is already scheduled to cancel on {when}",
                details={"cancelAt": cancel_at.isoformat() if cancel_at else None},
            )

        updated = provider.schedule_cancellation(subscription_id)
        cancel_at = period_end(updated)
        if cancel_at:
            self.ledger.mutate_entitlement(user_id, {"subscription_will_cancel_at": cancel_at})

        log_event("info", "checkout.cancel_scheduled", user_id=user_id, extra={"subscription_id": subscription_id})
        return {
            "success": True,
            "message": "Subscription will cancel at period end",
            "cancelAt": cancel_at.isoformat() if cancel_at else None,
        }
