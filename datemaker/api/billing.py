"""
Billing API routes.

Surface:
- POST /api/webhook: Stripe webhook (raw body + Stripe-Signature)
- POST /api/create-checkout-session: in-app checkout
- POST /api/create-web-checkout: website checkout (bearer auth)
- POST /api/create-portal-session: billing portal
- POST /api/cancel-subscription: cancel at period end
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from datemaker.core.auth import get_current_user_id
from datemaker.core.dependencies import Services, get_services
from datemaker.core.errors import BillingDisabledError, UnauthorizedError


router = APIRouter(tags=["billing"])


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(_Body):
    user_id: str = Field(alias="userId", min_length=1)
    plan: str = "monthly"
    email: Optional[str] = None
    platform: Optional[str] = None


class WebCheckoutRequest(_Body):
    user_id: Optional[str] = Field(default=None, alias="userId")
    plan: str = "monthly"
    email: Optional[str] = None


class UserRequest(_Body):
    user_id: str = Field(alias="userId", min_length=1)


class CheckoutResponse(BaseModel):
    sessionId: str
    url: Optional[str]


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """
    Handle Stripe webhook events.

    Signature verification runs over the raw body, before any parsing.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled, or record store unavailable (Stripe redelivers)
        502: Stripe unavailable while handling (Stripe redelivers)
    """
    if services.webhooks is None:
        raise BillingDisabledError("Billing disabled")

    body = await request.body()
    outcome = await run_in_threadpool(services.webhooks.process, body, stripe_signature)
    return {"received": True, "eventId": outcome.event_id, "outcome": outcome.outcome}


@router.post("/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(payload: CheckoutRequest, services: Services = Depends(get_services)):
    """
    Create a Stripe checkout session with a trial.

    Errors:
        400: Missing userId, or user already subscribed
        503: Billing disabled
        502: Stripe error or price not configured
    """
    return services.checkout.create_checkout_session(
        payload.user_id, plan=payload.plan, email=payload.email, platform=payload.platform
    )


@router.post("/create-web-checkout", response_model=CheckoutResponse)
def create_web_checkout(
    payload: WebCheckoutRequest,
    caller_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    if payload.user_id and payload.user_id != caller_id:
        raise UnauthorizedError("userId does not match the authenticated user")
    return services.checkout.create_web_checkout(caller_id, plan=payload.plan, email=payload.email)


@router.post("/create-portal-session")
def create_portal_session(payload: UserRequest, services: Services = Depends(get_services)):
    return services.checkout.create_portal_session(payload.user_id)


@router.post("/cancel-subscription")
def cancel_subscription(payload: UserRequest, services: Services = Depends(get_services)):
    """Schedule cancellation at the end of the current period."""
    return services.checkout.cancel_subscription(payload.user_id)
