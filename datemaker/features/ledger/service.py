"""
Subscription ledger.

Sole writer of entitlement state on user records. Every mutation is a
partial, field-level UPDATE so concurrent writers touching disjoint fields
never clobber each other; same-field writes are last-write-wins.

Store faults surface as StoreUnavailableError and are never retried here.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from datemaker.core.database import get_db_session, processed_transactions, users
from datemaker.core.errors import StoreUnavailableError, UserNotFoundError, ValidationError
from datemaker.core.logging import log_event
from datemaker.features.ledger.models import (
    DELETE_FIELD,
    MUTABLE_FIELDS,
    EntitlementRecord,
    Platform,
    SubscriptionStatus,
    TransactionRecord,
    utcnow,
)

logger = logging.getLogger("datemaker")

# Non-nullable columns fall back to their defaults when cleared
_CLEARED_VALUES = {
    "subscription_status": SubscriptionStatus.FREE.value,
    "subscription_platform": Platform.NONE.value,
    "payment_failed": False,
}


def _column_values(patch: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    for name, value in patch.items():
        if value is DELETE_FIELD:
            values[name] = _CLEARED_VALUES.get(name)
        elif isinstance(value, Enum):
            values[name] = value.value
        else:
            values[name] = value
    return values


def _describe_patch(patch: Mapping[str, Any]) -> Dict[str, str]:
    return {
        name: ("<deleted>" if value is DELETE_FIELD else str(getattr(value, "value", value)))
        for name, value in patch.items()
    }


class SubscriptionLedger:
    """Reads and patches user entitlement records in the record store."""

    def get_entitlement(self, user_id: str) -> EntitlementRecord:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(users).where(users.c.user_id == user_id)
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store read failed: {e.__class__.__name__}") from e

        if row is None:
            raise UserNotFoundError(user_id)
        return EntitlementRecord.from_row(dict(row))

    def ensure_user(self, user_id: str, email: Optional[str] = None) -> EntitlementRecord:
        """Provision a record with default entitlement state if none exists.

        Existing records are returned untouched.
        """
        now = utcnow()
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(users.c.user_id).where(users.c.user_id == user_id)
                ).first()
                if existing is None:
                    session.execute(
                        insert(users).values(
                            user_id=user_id,
                            email=email,
                            subscription_status=SubscriptionStatus.FREE.value,
                            subscription_platform=Platform.NONE.value,
                            payment_failed=False,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError:
            # Concurrent provisioning won the race; the record exists now
            pass
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store write failed: {e.__class__.__name__}") from e
        return self.get_entitlement(user_id)

    def mutate_entitlement(self, user_id: str, patch: Mapping[str, Any]) -> EntitlementRecord:
        """Apply a partial update to one user's entitlement fields.

        Fields absent from ``patch`` are left untouched; ``DELETE_FIELD``
        clears a field. ``updated_at`` is always stamped.

        Raises:
            UserNotFoundError: no record for ``user_id``
            StoreUnavailableError: record store unreachable or failing
            ValueError: ``patch`` names a field the ledger does not own
        """
        values = _column_values(patch)
        values["updated_at"] = utcnow()

        try:
            with get_db_session() as session:
                result = session.execute(
                    update(users).where(users.c.user_id == user_id).values(**values)
                )
                if result.rowcount == 0:
                    raise UserNotFoundError(user_id)
        except IntegrityError as e:
            raise ValidationError("Payment customer is already linked to another user") from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store write failed: {e.__class__.__name__}") from e

        log_event(
            "info",
            "ledger.mutated",
            user_id=user_id,
            extra={"fields": ",".join(sorted(_describe_patch(patch)))},
        )
        return self.get_entitlement(user_id)

    def find_user_id_by_customer(self, customer_id: Optional[str]) -> Optional[str]:
        """Reverse lookup from a payment-provider customer id (at most one match)."""
        if not customer_id:
            return None
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(users.c.user_id)
                    .where(users.c.payment_provider_customer_id == customer_id)
                    .limit(1)
                ).first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store read failed: {e.__class__.__name__}") from e
        return row[0] if row else None

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(processed_transactions).where(
                        processed_transactions.c.transaction_id == transaction_id
                    )
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store read failed: {e.__class__.__name__}") from e
        if row is None:
            return None
        return TransactionRecord(**dict(row))

    def record_transaction_and_mutate(
        self,
        transaction_id: str,
        user_id: str,
        product_id: Optional[str],
        patch: Mapping[str, Any],
        processed_at: Optional[datetime] = None,
    ) -> Optional[EntitlementRecord]:
        """Record a processed transaction and apply ``patch`` in one store transaction.

        Returns None when the transaction was already recorded; in that case
        nothing is mutated. A missing user rolls the insert back.
        """
        now = processed_at or utcnow()
        values = _column_values(patch)
        values["updated_at"] = now

        try:
            with get_db_session() as session:
                session.execute(
                    insert(processed_transactions).values(
                        transaction_id=transaction_id,
                        user_id=user_id,
                        product_id=product_id,
                        processed_at=now,
                    )
                )
                result = session.execute(
                    update(users).where(users.c.user_id == user_id).values(**values)
                )
                if result.rowcount == 0:
                    raise UserNotFoundError(user_id)
        except IntegrityError:
            logger.info(
                "ledger.transaction_duplicate",
                extra={"user_id": user_id, "transaction_id": transaction_id},
            )
            return None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Record store write failed: {e.__class__.__name__}") from e

        log_event(
            "info",
            "ledger.transaction_recorded",
            user_id=user_id,
            extra={"transaction_id": transaction_id, "product_id": product_id},
        )
        return self.get_entitlement(user_id)
