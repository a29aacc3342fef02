from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from datemaker.core.admission import AdmissionController, route_classes_for_path
from datemaker.core.errors import AdmissionRejectedError, app_error_handler
from datemaker.core.logging import get_request_id
from datemaker.core.metrics import admission_rejections_total


def client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Reject over-quota requests with 429 before they reach a route."""

    def __init__(self, app, *, controller: AdmissionController, enabled: bool = True):
        super().__init__(app)
        self.controller = controller
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next):
        if not self.enabled:
            return await call_next(request)

        route_classes = route_classes_for_path(request.url.path)
        if not route_classes:
            return await call_next(request)

        decision = await self.controller.admit_all(client_identity(request), route_classes)
        if decision is None or decision.allowed:
            return await call_next(request)

        admission_rejections_total.inc(labels={"route_class": decision.route_class})
        rid = getattr(request.state, "request_id", None) or get_request_id()
        response = await app_error_handler(
            request,
            AdmissionRejectedError(
                decision.message,
                retry_after=decision.retry_after,
                limit=decision.limit,
                request_id=rid,
            ),
        )
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = str(decision.retry_after)
        return response
