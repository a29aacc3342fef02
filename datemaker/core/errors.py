"""Error taxonomy and normalized JSON error handlers."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from datemaker.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def extra_payload(self) -> dict:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[dict] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.details = details or {}

    def extra_payload(self) -> dict:
        return dict(self.details)


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class InvalidSignatureError(AppError):
    """Webhook payload failed signature verification or could not be decoded."""
    code = "invalid_signature"
    status_code = 400


class ReceiptInvalidError(AppError):
    code = "receipt_invalid"
    status_code = 400

    def __init__(self, message: str, *, receipt_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.receipt_status = receipt_status

    def extra_payload(self) -> dict:
        return {"status": self.receipt_status} if self.receipt_status is not None else {}


class UserNotFoundError(AppError):
    code = "user_not_found"
    status_code = 400

    def __init__(self, user_id: str, **kwargs):
        super().__init__(f"User not found: {user_id}", **kwargs)
        self.user_id = user_id


class CustomerNotFoundError(AppError):
    code = "customer_not_found"
    status_code = 400

    def __init__(self, customer_id: str, **kwargs):
        super().__init__(f"No user for payment customer: {customer_id}", **kwargs)
        self.customer_id = customer_id


class StoreUnavailableError(AppError):
    code = "store_unavailable"
    status_code = 503


class ProviderUnavailableError(AppError):
    code = "provider_unavailable"
    status_code = 502

    def __init__(self, message: str, *, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderRejectedError(AppError):
    """Provider refused the request; repeating it cannot succeed."""
    code = "provider_rejected"
    status_code = 502

    def __init__(self, message: str, *, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class AdmissionRejectedError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, retry_after: int, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.limit = limit

    def extra_payload(self) -> dict:
        return {"retryAfter": self.retry_after}


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "message": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    payload.update(exc.extra_payload())
    logger = logging.getLogger("datemaker")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if isinstance(exc, AdmissionRejectedError):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("datemaker")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {field} {first.get('msg', '')}".strip() if field else "Invalid request"
    payload = _error_payload("validation_error", message, rid)
    logging.getLogger("datemaker").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("datemaker")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
