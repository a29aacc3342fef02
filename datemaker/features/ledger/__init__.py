from datemaker.features.ledger.models import (
    DELETE_FIELD,
    EntitlementRecord,
    Platform,
    SubscriptionStatus,
    SubscriptionType,
)
from datemaker.features.ledger.service import SubscriptionLedger

__all__ = [
    "DELETE_FIELD",
    "EntitlementRecord",
    "Platform",
    "SubscriptionLedger",
    "SubscriptionStatus",
    "SubscriptionType",
]
