"""
Payment webhook processor.

Verifies Stripe events over the raw payload, journals them by event id,
and reconciles the subscription ledger. Every handler is idempotent:
replaying an event rewrites the same values.

Acknowledgement rules:
- Durably applied or intentionally dropped events are acknowledged.
- Store or provider outages propagate so the route answers 5xx and Stripe
  redelivers.
- Any other handler failure, including a provider rejecting the request,
  is logged, journaled and acknowledged.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from datemaker.core.database import get_db_session, webhook_events
from datemaker.core.errors import (
    CustomerNotFoundError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StoreUnavailableError,
    UserNotFoundError,
)
from datemaker.core.logging import log_event
from datemaker.core.metrics import webhook_events_total
from datemaker.features.billing.provider import BillingProvider
from datemaker.features.ledger.models import (
    DELETE_FIELD,
    Platform,
    SubscriptionStatus,
    from_unix,
    utcnow,
)
from datemaker.features.ledger.service import SubscriptionLedger

logger = logging.getLogger("datemaker")

APPLIED = "applied"
IGNORED = "ignored"
DROPPED = "dropped"
DUPLICATE = "duplicate"
FAILED = "failed"

# Provider statuses with a definite entitlement; anything else is transient
STATUS_MAP = {
    "active": SubscriptionStatus.PREMIUM,
    "trialing": SubscriptionStatus.TRIAL,
    "canceled": SubscriptionStatus.FREE,
    "incomplete_expired": SubscriptionStatus.FREE,
}


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None


def period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    """Current period end from the subscription, or from its first item on newer API versions."""
    value = from_unix(subscription.get("current_period_end"))
    if value is not None:
        return value
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return from_unix(items[0].get("current_period_end"))
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if not subscription:
        parent = invoice.get("parent") or {}
        subscription = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or None


class WebhookProcessor:
    def __init__(self, provider: BillingProvider, ledger: SubscriptionLedger):
        self.provider = provider
        self.ledger = ledger
        self.handlers: Dict[str, Callable[[Dict[str, Any]], WebhookOutcome]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "invoice.payment_failed": self.handle_payment_failed,
        }

    def process(self, payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """
        Verify, journal and apply one webhook delivery.

        Raises:
            BillingWebhookError: signature or payload invalid (ledger untouched)
            StoreUnavailableError / ProviderUnavailableError: transient, redeliver
        """
        event = self.provider.verify_event(payload, signature_header)
        event_id = event["id"]
        event_type = event["type"]
        payload_hash = hashlib.sha256(payload).hexdigest()

        if self._already_processed(event_id, event_type, payload_hash):
            webhook_events_total.inc(labels={"event_type": event_type, "outcome": DUPLICATE})
            log_event("info", "webhook.duplicate", event_type=event_type, extra={"event_id": event_id})
            return WebhookOutcome(event_id, event_type, DUPLICATE)

        handler = self.handlers.get(event_type)
        obj = (event.get("data") or {}).get("object") or {}
        error: Optional[str] = None

        if handler is None:
            result = WebhookOutcome(event_id, event_type, IGNORED)
        else:
            try:
                result = handler(obj)
                result.event_id, result.event_type = event_id, event_type
            except (StoreUnavailableError, ProviderUnavailableError) as e:
                webhook_events_total.inc(labels={"event_type": event_type, "outcome": "retry"})
                log_event("error", "webhook.transient_failure", event_type=event_type, error_code=e.code,
                          extra={"event_id": event_id, "error_message": e.message})
                self._record_error(event_id, e.message)
                raise
            except (UserNotFoundError, CustomerNotFoundError) as e:
                log_event("warning", "webhook.unmatched", event_type=event_type, error_code=e.code,
                          extra={"event_id": event_id, "error_message": e.message})
                result = WebhookOutcome(event_id, event_type, DROPPED)
                error = e.message
            except ProviderRejectedError as e:
                log_event("warning", "webhook.provider_rejected", event_type=event_type, error_code=e.code,
                          extra={"event_id": event_id, "error_message": e.message})
                result = WebhookOutcome(event_id, event_type, FAILED)
                error = e.message
            except Exception as e:
                logger.exception("webhook.handler_failed", extra={"event_id": event_id, "event_type": event_type})
                result = WebhookOutcome(event_id, event_type, FAILED)
                error = f"{e.__class__.__name__}: {e}"[:500]

        self._mark_processed(event_id, result.outcome, error)
        webhook_events_total.inc(labels={"event_type": event_type, "outcome": result.outcome})
        log_event("info", "webhook.handled", user_id=result.user_id, event_type=event_type,
                  extra={"event_id": event_id, "outcome": result.outcome})
        return result

    # ---- journal ---------------------------------------------------------

    def _already_processed(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(webhook_events.c.processed_at).where(webhook_events.c.event_id == event_id)
                ).first()
                if existing is not None:
                    return existing[0] is not None
                session.execute(
                    insert(webhook_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        received_at=utcnow(),
                    )
                )
        except IntegrityError:
            # Concurrent delivery inserted the row first; apply again (idempotent)
            return False
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Webhook journal unavailable: {e.__class__.__name__}") from e
        return False

    def _mark_processed(self, event_id: str, outcome: str, error: Optional[str]) -> None:
        try:
            with get_db_session() as session:
                session.execute(
                    update(webhook_events)
                    .where(webhook_events.c.event_id == event_id)
                    .values(processed_at=utcnow(), outcome=outcome, error=error)
                )
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Webhook journal unavailable: {e.__class__.__name__}") from e

    def _record_error(self, event_id: str, message: str) -> None:
        try:
            with get_db_session() as session:
                session.execute(
                    update(webhook_events)
                    .where(webhook_events.c.event_id == event_id)
                    .values(error=message[:500])
                )
        except SQLAlchemyError:
            logger.warning("webhook.journal_error_write_failed", extra={"event_id": event_id})

    # ---- handlers --------------------------------------------------------

    def _user_for_customer(self, customer_id: Optional[str]) -> str:
        user_id = self.ledger.find_user_id_by_customer(customer_id)
        if not user_id:
            raise CustomerNotFoundError(customer_id or "<missing>")
        return user_id

    def handle_checkout_completed(self, session: Dict[str, Any]) -> WebhookOutcome:
        user_id = session.get("client_reference_id")
        if not user_id:
            logger.error("webhook.checkout_missing_user", extra={"session_id": session.get("id")})
            return WebhookOutcome("", "", DROPPED)

        subscription_id = session.get("subscription")
        if not subscription_id:
            logger.info("webhook.checkout_without_subscription", extra={"session_id": session.get("id")})
            return WebhookOutcome("", "", IGNORED, user_id)

        subscription = self.provider.retrieve_subscription(subscription_id)
        status = SubscriptionStatus.TRIAL if subscription.get("status") == "trialing" else SubscriptionStatus.PREMIUM

        patch: Dict[str, Any] = {
            "payment_provider_subscription_id": subscription.get("id") or subscription_id,
            "subscription_status": status,
            "subscription_platform": Platform.WEB,
        }
        if session.get("customer"):
            patch["payment_provider_customer_id"] = session["customer"]

        # Only well-formed timestamps are written; never overwrite with null
        trial_end = from_unix(subscription.get("trial_end"))
        if trial_end:
            patch["trial_ends_at"] = trial_end
        current_end = period_end(subscription)
        if current_end:
            patch["current_period_end"] = current_end

        self.ledger.mutate_entitlement(user_id, patch)
        return WebhookOutcome("", "", APPLIED, user_id)

    def handle_subscription_created(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        # Drops when this arrives before the checkout write landed the customer id;
        # later updated/invoice events for the subscription repair the record.
        user_id = self._user_for_customer(subscription.get("customer"))
        status = SubscriptionStatus.TRIAL if subscription.get("status") == "trialing" else SubscriptionStatus.PREMIUM

        patch: Dict[str, Any] = {
            "payment_provider_subscription_id": subscription.get("id"),
            "subscription_status": status,
            "subscription_platform": Platform.WEB,
            "trial_ends_at": from_unix(subscription.get("trial_end")) or DELETE_FIELD,
        }
        current_end = period_end(subscription)
        if current_end:
            patch["current_period_end"] = current_end

        self.ledger.mutate_entitlement(user_id, patch)
        return WebhookOutcome("", "", APPLIED, user_id)

    def handle_subscription_updated(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        user_id = self._user_for_customer(subscription.get("customer"))
        status = STATUS_MAP.get(subscription.get("status"))
        current_end = period_end(subscription)

        patch: Dict[str, Any] = {}
        if status is not None:
            patch["subscription_status"] = status
        else:
            logger.info(
                "webhook.transient_status",
                extra={"user_id": user_id, "provider_status": subscription.get("status")},
            )
        if current_end:
            patch["current_period_end"] = current_end

        if status is SubscriptionStatus.FREE:
            patch["payment_provider_subscription_id"] = DELETE_FIELD
            patch["subscription_will_cancel_at"] = DELETE_FIELD
        elif subscription.get("cancel_at_period_end") and current_end:
            patch["subscription_will_cancel_at"] = current_end
        elif not subscription.get("cancel_at_period_end"):
            patch["subscription_will_cancel_at"] = DELETE_FIELD

        self.ledger.mutate_entitlement(user_id, patch)
        return WebhookOutcome("", "", APPLIED, user_id)

    def handle_subscription_deleted(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        user_id = self._user_for_customer(subscription.get("customer"))
        self.ledger.mutate_entitlement(
            user_id,
            {
                "subscription_status": SubscriptionStatus.FREE,
                "payment_provider_subscription_id": DELETE_FIELD,
                "subscription_will_cancel_at": DELETE_FIELD,
            },
        )
        return WebhookOutcome("", "", APPLIED, user_id)

    def _invoice_subscription(self, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        return self.provider.retrieve_subscription(subscription_id)

    def handle_payment_succeeded(self, invoice: Dict[str, Any]) -> WebhookOutcome:
        subscription = self._invoice_subscription(invoice)
        if subscription is None:
            return WebhookOutcome("", "", IGNORED)

        user_id = self._user_for_customer(subscription.get("customer"))
        patch: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.PREMIUM,
            "payment_failed": DELETE_FIELD,
            "payment_failed_at": DELETE_FIELD,
        }
        current_end = period_end(subscription)
        if current_end:
            patch["current_period_end"] = current_end

        self.ledger.mutate_entitlement(user_id, patch)
        return WebhookOutcome("", "", APPLIED, user_id)

    def handle_payment_failed(self, invoice: Dict[str, Any]) -> WebhookOutcome:
        subscription = self._invoice_subscription(invoice)
        if subscription is None:
            return WebhookOutcome("", "", IGNORED)

        user_id = self._user_for_customer(subscription.get("customer"))
        # Flag only; downgrades come from subscription.updated/deleted
        self.ledger.mutate_entitlement(user_id, {"payment_failed": True, "payment_failed_at": utcnow()})
        return WebhookOutcome("", "", APPLIED, user_id)
