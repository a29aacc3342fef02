import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


RECEIPT_MODE_VERIFY = "verify"
RECEIPT_MODE_TRUST_CLIENT = "trust_client"


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None
    CACHE_RETRY_SECONDS: int = 30

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_MONTHLY_PRICE_ID: Optional[str] = None
    STRIPE_ANNUAL_PRICE_ID: Optional[str] = None
    CHECKOUT_TRIAL_DAYS: int = 7

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"
    IOS_CHECKOUT_SUCCESS_URL: str = "datemaker://checkout-success"
    IOS_CHECKOUT_CANCEL_URL: str = "datemaker://checkout-cancelled"
    WEB_CHECKOUT_SUCCESS_URL: Optional[str] = None
    WEB_CHECKOUT_CANCEL_URL: Optional[str] = None

    # Apple receipts
    APPLE_SHARED_SECRET: Optional[str] = None
    RECEIPT_VERIFICATION_MODE: str = RECEIPT_MODE_VERIFY  # verify | trust_client
    ALLOW_TRUST_CLIENT_IN_PRODUCTION: bool = False
    APPLE_PRODUCTION_VERIFY_URL: str = "https://buy.itunes.apple.com/verifyReceipt"
    APPLE_SANDBOX_VERIFY_URL: str = "https://sandbox.itunes.apple.com/verifyReceipt"
    RECEIPT_VERIFY_TIMEOUT_SECONDS: float = 10.0

    # Search providers
    GOOGLE_MAPS_API_KEY: Optional[str] = None
    TICKETMASTER_API_KEY: Optional[str] = None
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Admission control
    ADMISSION_ENABLED: bool = True
    ADMISSION_BACKEND: str = "memory"  # memory | redis
    ADMISSION_GENERAL_LIMIT: int = 100
    ADMISSION_GENERAL_WINDOW_SECONDS: int = 15 * 60
    ADMISSION_PLACES_LIMIT: int = 60
    ADMISSION_PLACES_WINDOW_SECONDS: int = 24 * 60 * 60
    ADMISSION_GEOCODE_LIMIT: int = 50
    ADMISSION_GEOCODE_WINDOW_SECONDS: int = 15 * 60
    ADMISSION_PHOTO_LIMIT: int = 100
    ADMISSION_PHOTO_WINDOW_SECONDS: int = 15 * 60
    ADMISSION_CHECKOUT_LIMIT: int = 10
    ADMISSION_CHECKOUT_WINDOW_SECONDS: int = 15 * 60

    # Caller auth (web checkout)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_JWT_AUDIENCE: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in {"production", "prod"}

    @property
    def billing_enabled(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("datemaker")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_MONTHLY_PRICE_ID",
        "STRIPE_ANNUAL_PRICE_ID",
        "GOOGLE_MAPS_API_KEY",
    ]
    problems = []

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    mode = getattr(cfg, "RECEIPT_VERIFICATION_MODE", RECEIPT_MODE_VERIFY)
    if mode not in (RECEIPT_MODE_VERIFY, RECEIPT_MODE_TRUST_CLIENT):
        problems.append(f"Unknown RECEIPT_VERIFICATION_MODE: {mode}")
    elif mode == RECEIPT_MODE_VERIFY and not getattr(cfg, "APPLE_SHARED_SECRET", None):
        log.warning("APPLE_SHARED_SECRET not set; auto-renewable receipts will fail verification")
    elif mode == RECEIPT_MODE_TRUST_CLIENT:
        production = str(getattr(cfg, "ENV", "")).lower() in {"production", "prod"}
        if production and not getattr(cfg, "ALLOW_TRUST_CLIENT_IN_PRODUCTION", False):
            problems.append("RECEIPT_VERIFICATION_MODE=trust_client is not allowed in production")
        else:
            log.warning("Receipt verification mode is trust_client; client-reported purchases are not verified")

    backend = getattr(cfg, "ADMISSION_BACKEND", "memory")
    if backend == "redis" and not getattr(cfg, "REDIS_URL", None):
        problems.append("ADMISSION_BACKEND=redis requires REDIS_URL")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
