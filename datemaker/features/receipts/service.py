"""
App Store receipt reconciliation.

Operations for one user, each idempotent:
- validate_and_upgrade: verify a purchase receipt (deduplicated by transaction id)
- restore: apply the best client-reported owned product
- sync: reconcile against the products active on the device
- expire: downgrade on a client-reported expiration

Expiry dates written here are local estimates (now + 1 or 12 months);
the App Store remains authoritative for renewals.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fastapi.concurrency import run_in_threadpool

from datemaker.core.config import RECEIPT_MODE_TRUST_CLIENT, RECEIPT_MODE_VERIFY
from datemaker.core.errors import ValidationError
from datemaker.core.logging import log_event
from datemaker.core.metrics import receipt_validations_total
from datemaker.features.ledger.models import (
    DELETE_FIELD,
    Platform,
    SubscriptionStatus,
    SubscriptionType,
    add_months,
    ensure_utc,
    utcnow,
)
from datemaker.features.ledger.service import SubscriptionLedger
from datemaker.features.receipts.verifier import AppleReceiptVerifier

logger = logging.getLogger("datemaker")

YEARLY_MARKER = "yearly"


def subscription_type_for(product_id: str) -> SubscriptionType:
    return SubscriptionType.YEARLY if YEARLY_MARKER in product_id else SubscriptionType.MONTHLY


def estimate_expiry(product_id: str, now: Optional[datetime] = None) -> datetime:
    months = 12 if subscription_type_for(product_id) is SubscriptionType.YEARLY else 1
    return add_months(now or utcnow(), months)


def pick_best_product(product_ids: Iterable[str]) -> Optional[str]:
    """Yearly products win over monthly; otherwise the first reported."""
    ids = [p for p in product_ids if p]
    if not ids:
        return None
    return next((p for p in ids if YEARLY_MARKER in p), ids[0])


class ReceiptProcessor:
    def __init__(
        self,
        ledger: SubscriptionLedger,
        verifier: AppleReceiptVerifier,
        mode: str = RECEIPT_MODE_VERIFY,
        shared_secret: Optional[str] = None,
    ):
        if mode not in (RECEIPT_MODE_VERIFY, RECEIPT_MODE_TRUST_CLIENT):
            raise ValueError(f"Unknown receipt verification mode: {mode}")
        self.ledger = ledger
        self.verifier = verifier
        self.mode = mode
        self.shared_secret = shared_secret

    def _upgrade_patch(self, product_id: str, now: datetime, with_expiry: bool = True) -> Dict[str, Any]:
        patch: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.PREMIUM,
            "subscription_platform": Platform.APPLE,
            "subscription_type": subscription_type_for(product_id),
            "apple_product_id": product_id,
            "last_receipt_validation_at": now,
        }
        if with_expiry:
            patch["apple_subscription_expiry"] = estimate_expiry(product_id, now)
        return patch

    async def _verify(self, user_id: str, receipt: str) -> None:
        if self.mode == RECEIPT_MODE_TRUST_CLIENT:
            logger.warning(
                "receipt.unverified",
                extra={"user_id": user_id, "verification_mode": self.mode},
            )
            return
        await self.verifier.verify(receipt, self.shared_secret)

    async def validate_and_upgrade(
        self,
        user_id: str,
        receipt: str,
        product_id: str,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not receipt or not user_id:
            raise ValidationError("Missing receipt or userId")
        if not product_id:
            raise ValidationError("Missing productId")

        # Ledger calls are blocking SQL and run in the threadpool
        processed = None
        if transaction_id:
            processed = await run_in_threadpool(self.ledger.get_transaction, transaction_id)
        if processed is not None:
            receipt_validations_total.inc(labels={"operation": "validate", "outcome": "duplicate"})
            log_event(
                "info",
                "receipt.already_processed",
                user_id=user_id,
                extra={
                    "transaction_id": transaction_id,
                    "processed_for": processed.user_id,
                    "processed_at": processed.processed_at.isoformat(),
                },
            )
            return {"success": True, "message": "Transaction already processed", "alreadyProcessed": True}

        try:
            await self._verify(user_id, receipt)
        except Exception:
            receipt_validations_total.inc(labels={"operation": "validate", "outcome": "rejected"})
            raise

        now = utcnow()
        patch = self._upgrade_patch(product_id, now)
        if transaction_id:
            record = await run_in_threadpool(
                self.ledger.record_transaction_and_mutate, transaction_id, user_id, product_id, patch, processed_at=now
            )
            if record is None:
                # Lost the insert race to a concurrent request for the same transaction
                receipt_validations_total.inc(labels={"operation": "validate", "outcome": "duplicate"})
                return {"success": True, "message": "Transaction already processed", "alreadyProcessed": True}
        else:
            await run_in_threadpool(self.ledger.mutate_entitlement, user_id, patch)

        subscription_type = patch["subscription_type"].value
        receipt_validations_total.inc(labels={"operation": "validate", "outcome": "upgraded"})
        log_event(
            "info",
            "receipt.upgraded",
            user_id=user_id,
            extra={"product_id": product_id, "subscription_type": subscription_type, "mode": self.mode},
        )
        return {
            "success": True,
            "message": "User upgraded successfully",
            "isPremium": True,
            "subscriptionType": subscription_type,
        }

    def restore(self, user_id: str, products: List[Mapping[str, Any]]) -> Dict[str, Any]:
        owned = [p.get("id") for p in products if p.get("owned")]
        best = pick_best_product(owned)
        if best is None:
            log_event("info", "receipt.restore_empty", user_id=user_id)
            return {"success": False, "message": "No active subscriptions found"}

        patch = self._upgrade_patch(best, utcnow())
        self.ledger.mutate_entitlement(user_id, patch)
        subscription_type = patch["subscription_type"].value
        receipt_validations_total.inc(labels={"operation": "restore", "outcome": "upgraded"})
        log_event("info", "receipt.restored", user_id=user_id, extra={"product_id": best})
        return {
            "success": True,
            "message": "Subscription restored successfully",
            "subscriptionType": subscription_type,
        }

    def sync(self, user_id: str, active_products: List[Mapping[str, Any]]) -> Dict[str, Any]:
        record = self.ledger.get_entitlement(user_id)
        best = pick_best_product(p.get("id") for p in active_products)

        if best is not None:
            if record.subscription_status is SubscriptionStatus.PREMIUM and record.apple_product_id == best:
                return {"success": True, "updated": False}
            patch = self._upgrade_patch(best, utcnow(), with_expiry=False)
            self.ledger.mutate_entitlement(user_id, patch)
            receipt_validations_total.inc(labels={"operation": "sync", "outcome": "upgraded"})
            log_event("info", "receipt.synced", user_id=user_id, extra={"product_id": best})
            return {"success": True, "updated": True, "subscriptionType": patch["subscription_type"].value}

        expiry = ensure_utc(record.apple_subscription_expiry)
        now = utcnow()
        if (
            record.subscription_platform is Platform.APPLE
            and expiry is not None
            and now > expiry
            and record.subscription_status is not SubscriptionStatus.FREE
        ):
            self.ledger.mutate_entitlement(user_id, self._downgrade_patch(record.apple_product_id, now))
            receipt_validations_total.inc(labels={"operation": "sync", "outcome": "expired"})
            log_event("info", "receipt.sync_expired", user_id=user_id)
            return {"success": True, "updated": True, "expired": True}

        return {"success": True, "updated": False}

    def expire(self, user_id: str, product_id: Optional[str] = None) -> Dict[str, Any]:
        record = self.ledger.get_entitlement(user_id)
        self.ledger.mutate_entitlement(
            user_id, self._downgrade_patch(product_id or record.apple_product_id, utcnow())
        )
        receipt_validations_total.inc(labels={"operation": "expire", "outcome": "expired"})
        log_event("info", "receipt.expired", user_id=user_id, extra={"product_id": product_id})
        return {"success": True, "message": "User downgraded"}

    @staticmethod
    def _downgrade_patch(previous_product_id: Optional[str], now: datetime) -> Dict[str, Any]:
        patch: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.FREE,
            "subscription_type": DELETE_FIELD,
            "apple_product_id": DELETE_FIELD,
            "apple_subscription_expired_at": now,
        }
        if previous_product_id:
            patch["previous_apple_product_id"] = previous_product_id
        return patch
