"""Service container wired at startup and exposed to routes via app.state."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from datemaker.core.admission import (
    AdmissionController,
    InMemoryWindowStore,
    RedisWindowStore,
    build_admission_policies,
)
from datemaker.core.cache import CacheAvailability, ReadThroughCache, RedisCacheStore
from datemaker.features.billing.checkout import CheckoutOrchestrator
from datemaker.features.billing.provider import BillingProvider
from datemaker.features.billing.stripe_provider import StripeProvider
from datemaker.features.billing.webhooks import WebhookProcessor
from datemaker.features.ledger.service import SubscriptionLedger
from datemaker.features.receipts.service import ReceiptProcessor
from datemaker.features.receipts.verifier import AppleReceiptVerifier
from datemaker.features.search.providers import GoogleMapsClient, TicketmasterClient
from datemaker.features.search.service import SearchService

logger = logging.getLogger("datemaker")


@dataclass
class Services:
    settings: object
    ledger: SubscriptionLedger
    billing_provider: Optional[BillingProvider]
    webhooks: Optional[WebhookProcessor]
    checkout: CheckoutOrchestrator
    receipts: ReceiptProcessor
    cache: ReadThroughCache
    search: SearchService
    admission: AdmissionController
    cache_store: Optional[RedisCacheStore] = None

    async def close(self) -> None:
        if self.cache_store is not None:
            await self.cache_store.close()


def build_services(cfg, billing_provider: Optional[BillingProvider] = None) -> Services:
    """Construct every service from settings; billing stays off without a Stripe key."""
    ledger = SubscriptionLedger()

    provider = billing_provider
    if provider is None and cfg.billing_enabled:
        provider = StripeProvider(cfg.STRIPE_SECRET_KEY, cfg.STRIPE_WEBHOOK_SECRET)
    webhooks = WebhookProcessor(provider, ledger) if provider is not None else None

    cache_store = None
    if cfg.REDIS_URL:
        cache_store = RedisCacheStore.from_url(
            cfg.REDIS_URL, CacheAvailability(retry_seconds=cfg.CACHE_RETRY_SECONDS)
        )
    else:
        logger.warning("cache.disabled", extra={"reason": "REDIS_URL not set"})
    cache = ReadThroughCache(cache_store)

    if cfg.ADMISSION_BACKEND == "redis" and cache_store is not None:
        window_store = RedisWindowStore(cache_store.client)
    else:
        window_store = InMemoryWindowStore()

    receipts = ReceiptProcessor(
        ledger,
        AppleReceiptVerifier(
            cfg.APPLE_PRODUCTION_VERIFY_URL,
            cfg.APPLE_SANDBOX_VERIFY_URL,
            timeout_seconds=cfg.RECEIPT_VERIFY_TIMEOUT_SECONDS,
        ),
        mode=cfg.RECEIPT_VERIFICATION_MODE,
        shared_secret=cfg.APPLE_SHARED_SECRET,
    )
    logger.info("receipts.mode", extra={"verification_mode": cfg.RECEIPT_VERIFICATION_MODE})

    search = SearchService(
        cache,
        GoogleMapsClient(cfg.GOOGLE_MAPS_API_KEY, cfg.PROVIDER_TIMEOUT_SECONDS),
        TicketmasterClient(cfg.TICKETMASTER_API_KEY, cfg.PROVIDER_TIMEOUT_SECONDS),
    )

    return Services(
        settings=cfg,
        ledger=ledger,
        billing_provider=provider,
        webhooks=webhooks,
        checkout=CheckoutOrchestrator(provider, ledger, cfg),
        receipts=receipts,
        cache=cache,
        search=search,
        admission=AdmissionController(build_admission_policies(cfg), window_store),
        cache_store=cache_store,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
