"""Error taxonomy and FastAPI handlers.

Denials are never exceptions: they come back as EntitlementResult with
allowed=False. Everything here is either a configuration problem, an
invariant violation, a hard-limit refusal or a storage fault.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from entitlement_engine.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    """Invariant violation in caller input (bad quantity, malformed boost)."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConfigurationError(AppError, LookupError):
    """Reference data is missing: a data-integrity problem, not a denial."""
    code = "configuration_error"
    status_code = 422


class UnknownFeatureError(ConfigurationError):
    code = "unknown_feature"

    def __init__(self, feature_code: str, **kwargs):
        super().__init__(f"Feature '{feature_code}' does not exist", **kwargs)
        self.feature_code = feature_code


class UnknownPackageError(ConfigurationError):
    code = "unknown_package"

    def __init__(self, package_code: str, **kwargs):
        super().__init__(f"Package '{package_code}' does not exist", **kwargs)
        self.package_code = package_code


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class TransientStorageError(AppError):
    """Storage contention or connectivity fault that survived internal retries."""
    code = "storage_unavailable"
    status_code = 503
    retryable = True


class AdminAuthError(AppError):
    code = "forbidden"
    status_code = 403


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, retryable: bool = False) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id, "retryable": retryable},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.retryable)
    logger = logging.getLogger("entitlement_engine")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.retryable:
        response.headers["retry-after"] = "1"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("entitlement_engine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("entitlement_engine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
