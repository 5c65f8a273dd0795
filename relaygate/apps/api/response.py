from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"


def get_request_id(request: Request) -> str:
    # Reuse the upstream request id so gateway logs line up with the caller's.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, str]:
    return {"request_id": get_request_id(request), "api_version": API_VERSION}


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"error": error, "meta": _meta(request)}


def rate_limit_headers(
    *, limit: int, remaining: int, reset_at: datetime, scope: str | None
) -> dict[str, str]:
    # Same header set on allowed and rejected actions.
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, remaining)),
        "X-RateLimit-Reset": reset_at.isoformat(),
    }
    if scope:
        headers["X-RateLimit-Scope"] = scope
    return headers
