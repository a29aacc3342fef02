"""
Entitlement record types for the subscription ledger.
"""

import calendar
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SubscriptionStatus(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    PREMIUM = "premium"


class Platform(str, Enum):
    """Origin of the subscription that currently grants the entitlement."""
    WEB = "web"
    APPLE = "apple"
    NONE = "none"


class SubscriptionType(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class _DeleteField:
    """Patch value that clears a field instead of setting it."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"

    def __bool__(self) -> bool:
        return False


DELETE_FIELD = _DeleteField()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the last day of the target month."""
    month = value.month + months
    year = value.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def from_unix(value: Any) -> Optional[datetime]:
    """Convert a provider unix timestamp to a UTC datetime; non-numeric yields None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass
class EntitlementRecord:
    user_id: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_platform: Platform = Platform.NONE
    subscription_type: Optional[str] = None
    email: Optional[str] = None
    payment_provider_customer_id: Optional[str] = None
    payment_provider_subscription_id: Optional[str] = None
    apple_product_id: Optional[str] = None
    apple_subscription_expiry: Optional[datetime] = None
    previous_apple_product_id: Optional[str] = None
    apple_subscription_expired_at: Optional[datetime] = None
    last_receipt_validation_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    subscription_will_cancel_at: Optional[datetime] = None
    payment_failed: bool = False
    payment_failed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_premium(self) -> bool:
        return self.subscription_status in (SubscriptionStatus.PREMIUM, SubscriptionStatus.TRIAL)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EntitlementRecord":
        values = {f.name: row.get(f.name) for f in fields(cls) if f.name in row}
        values["subscription_status"] = SubscriptionStatus(values.get("subscription_status") or "free")
        values["subscription_platform"] = Platform(values.get("subscription_platform") or "none")
        values["payment_failed"] = bool(values.get("payment_failed"))
        for name, value in list(values.items()):
            if isinstance(value, datetime):
                values[name] = ensure_utc(value)
        return cls(**values)

    def to_public_dict(self) -> Dict[str, Any]:
        """Client-facing view of the record (camelCase keys, ISO timestamps)."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "userId": self.user_id,
            "isPremium": self.is_premium,
            "subscriptionStatus": self.subscription_status.value,
            "subscriptionPlatform": self.subscription_platform.value,
            "subscriptionType": self.subscription_type,
            "trialEndsAt": _iso(self.trial_ends_at),
            "currentPeriodEnd": _iso(self.current_period_end),
            "subscriptionWillCancelAt": _iso(self.subscription_will_cancel_at),
            "appleProductId": self.apple_product_id,
            "appleSubscriptionExpiry": _iso(self.apple_subscription_expiry),
            "paymentFailed": self.payment_failed,
        }


# Columns the ledger may patch. user_id and created_at are immutable and
# updated_at is stamped by the ledger itself.
MUTABLE_FIELDS = frozenset(
    f.name for f in fields(EntitlementRecord)
    if f.name not in {"user_id", "created_at", "updated_at"}
)


@dataclass
class TransactionRecord:
    transaction_id: str
    user_id: str
    product_id: Optional[str]
    processed_at: datetime
