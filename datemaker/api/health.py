"""
Health and diagnostics API.

Reports provider configuration and dependency reachability without
exposing secrets.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from datemaker.core.database import check_connection
from datemaker.core.dependencies import Services, get_services

logger = logging.getLogger("datemaker")

router = APIRouter(tags=["health"])
root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    cfg = services.settings
    db_ok = await run_in_threadpool(check_connection)
    cache_ok = services.cache.is_available()
    if services.cache_store is not None and not cache_ok:
        cache_ok = await services.cache_store.ping()

    return {
        "status": "ok" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_ok,
        "stripe": services.billing_provider is not None,
        "googleMaps": bool(cfg.GOOGLE_MAPS_API_KEY),
        "ticketmaster": bool(cfg.TICKETMASTER_API_KEY),
        "redis": cache_ok,
        "caching": "active" if cache_ok else "disabled",
        "receiptVerification": cfg.RECEIPT_VERIFICATION_MODE,
        "admission": cfg.ADMISSION_BACKEND if cfg.ADMISSION_ENABLED else "disabled",
    }
