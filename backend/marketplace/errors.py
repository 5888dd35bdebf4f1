# Error reporting

# All domain failures derive from MarketError. Routes and services raise them,
# and the handlers registered in main.py turn them into JSON responses.

import logging
import threading
from collections import Counter

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class MarketError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "bad_request"

    def __init__(self, detail: str = "Request could not be processed"):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(MarketError):
    code = "validation_failed"


class NotFoundError(MarketError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDenied(MarketError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class ConflictError(MarketError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidTransition(ConflictError):
    code = "invalid_transition"


class AlreadyAssigned(ConflictError):
    code = "already_assigned"

    def __init__(self, detail: str = "Order already assigned to another agent"):
        super().__init__(detail)


class InvalidCode(MarketError):
    code = "invalid_code"


class CodeLocked(MarketError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "code_locked"


class OrderOwnershipError(MarketError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "owner_not_buyer"

    def __init__(self, detail: str = "Orders can only belong to users with the buyer role"):
        super().__init__(detail)


class PromotionError(MarketError):
    code = "promotion_invalid"


# -----------------------------------------------------------------
# Reporting
# -----------------------------------------------------------------

HTTP_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
}

_counter_lock = threading.Lock()
ERROR_COUNTS: Counter = Counter()


def report_error(exc: Exception, request: Request = None) -> JSONResponse:
    """Log, count and render a failure. The single exit point for error responses."""
    where = f"{request.method} {request.url.path}" if request is not None else "-"

    headers = None
    if isinstance(exc, MarketError):
        code, status_code, detail = exc.code, exc.status_code, exc.detail
        logger.warning("%s -> %s %s: %s", where, status_code, code, detail)
    elif isinstance(exc, StarletteHTTPException):
        code = HTTP_CODES.get(exc.status_code, "http_error")
        status_code, detail, headers = exc.status_code, exc.detail, getattr(exc, "headers", None)
        logger.warning("%s -> %s %s: %s", where, status_code, code, detail)
    else:
        code, status_code, detail = "internal_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
        logger.error("%s -> unhandled %s", where, type(exc).__name__, exc_info=exc)

    with _counter_lock:
        ERROR_COUNTS[code] += 1

    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code}, headers=headers)


def error_counts() -> dict:
    with _counter_lock:
        return dict(ERROR_COUNTS)


async def market_error_handler(request: Request, exc: MarketError):
    return report_error(exc, request)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return report_error(exc, request)


async def unhandled_error_handler(request: Request, exc: Exception):
    return report_error(exc, request)
