"""App Store receipt routes (validate, restore, sync, expire)."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from datemaker.core.dependencies import Services, get_services


router = APIRouter(tags=["receipts"])


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ValidateReceiptRequest(_Body):
    receipt: str = Field(min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    product_id: str = Field(alias="productId", min_length=1)
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class OwnedProduct(BaseModel):
    id: str
    owned: bool = False


class RestoreRequest(_Body):
    user_id: str = Field(alias="userId", min_length=1)
    products: List[OwnedProduct]


class ActiveProduct(BaseModel):
    id: str


class SyncRequest(_Body):
    user_id: str = Field(alias="userId", min_length=1)
    subscriptions: List[ActiveProduct] = []


class ExpiredRequest(_Body):
    user_id: str = Field(alias="userId", min_length=1)
    product_id: Optional[str] = Field(default=None, alias="productId")


@router.post("/validate-apple-receipt")
async def validate_apple_receipt(payload: ValidateReceiptRequest, services: Services = Depends(get_services)):
    """
    Verify a purchase receipt and upgrade the user.

    A repeated transactionId returns {"success": true, "alreadyProcessed": true}
    without touching the user again.

    Errors:
        400: Missing fields, or receipt rejected by the App Store
        502: App Store unreachable
        503: Record store unavailable
    """
    return await services.receipts.validate_and_upgrade(
        payload.user_id, payload.receipt, payload.product_id, payload.transaction_id
    )


@router.post("/restore-apple-subscription")
def restore_apple_subscription(payload: RestoreRequest, services: Services = Depends(get_services)):
    return services.receipts.restore(payload.user_id, [p.model_dump() for p in payload.products])


@router.post("/sync-apple-subscription")
def sync_apple_subscription(payload: SyncRequest, services: Services = Depends(get_services)):
    """Reconcile with the subscriptions currently active on the device (called on app load)."""
    return services.receipts.sync(payload.user_id, [s.model_dump() for s in payload.subscriptions])


@router.post("/apple-subscription-expired")
def apple_subscription_expired(payload: ExpiredRequest, services: Services = Depends(get_services)):
    return services.receipts.expire(payload.user_id, payload.product_id)
