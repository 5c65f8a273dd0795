from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relaygate.apps.api.response import error_response, rate_limit_headers
from relaygate.core.errors import (
    AlreadyExistsError,
    NotFoundError,
    ProtocolConnectionError,
    QuotaExceededError,
    QuotaUnavailableError,
    RelayGateError,
    ServiceUnavailableError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    502: "PROTOCOL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _map_gateway_error(exc: RelayGateError) -> tuple[int, str]:
    # Order matters: subclasses are matched before their parents.
    if isinstance(exc, QuotaExceededError):
        return 429, "QUOTA_EXCEEDED"
    if isinstance(exc, QuotaUnavailableError):
        return 503, "QUOTA_UNAVAILABLE"
    if isinstance(exc, ServiceUnavailableError):
        return 503, "SERVICE_UNAVAILABLE"
    if isinstance(exc, NotFoundError):
        return 404, "NOT_FOUND"
    if isinstance(exc, AlreadyExistsError):
        return 409, "ALREADY_EXISTS"
    if isinstance(exc, ValidationError):
        return 400, "VALIDATION_ERROR"
    if isinstance(exc, ProtocolConnectionError):
        return 502, "PROTOCOL_ERROR"
    return 500, "INTERNAL_ERROR"


def quota_headers(exc: QuotaExceededError) -> dict[str, str]:
    retry_after = max(0.0, (exc.reset_at - datetime.now(timezone.utc)).total_seconds())
    headers = rate_limit_headers(limit=exc.limit, remaining=0, reset_at=exc.reset_at, scope=exc.scope)
    headers["Retry-After"] = str(int(math.ceil(retry_after)))
    return headers


async def gateway_exception_handler(request: Request, exc: RelayGateError) -> JSONResponse:
    status_code, code = _map_gateway_error(exc)
    details: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    if isinstance(exc, QuotaExceededError):
        details = exc.to_details()
        headers = quota_headers(exc)
    if status_code >= 500:
        logger.warning("gateway_error path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
