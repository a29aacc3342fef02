import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load env from the working directory before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError

from datemaker.api import billing, health, metrics, receipts, search
from datemaker.core.config import Settings, settings, validate_config
from datemaker.core.database import create_all_tables, get_database_url
from datemaker.core.dependencies import Services, build_services
from datemaker.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from datemaker.core.logging import configure_logging
from datemaker.core.middleware.admission import AdmissionMiddleware
from datemaker.core.middleware.request_id import RequestIdMiddleware


def create_app(settings_obj: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    cfg = settings_obj or settings
    services = services or build_services(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("datemaker")
        logger.info("Starting DateMaker backend...")
        if get_database_url():
            create_all_tables()
        try:
            yield
        finally:
            await services.close()
            logger.info("Stopping DateMaker backend...")

    app = FastAPI(title="DateMaker - Backend", lifespan=lifespan)
    app.state.settings = cfg
    app.state.services = services

    # Outermost last: request ids exist before admission decisions are logged
    app.add_middleware(
        AdmissionMiddleware,
        controller=services.admission,
        enabled=cfg.ADMISSION_ENABLED,
    )
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api")
    app.include_router(receipts.router, prefix="/api")
    app.include_router(search.router, prefix="/api")
    app.include_router(health.router, prefix="/api")
    app.include_router(health.root_router)
    app.include_router(metrics.router, prefix="/api")
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("datemaker.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
