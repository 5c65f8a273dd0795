from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from relaygate.apps.api.response import success_response


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    sessions: int
    pending_deliveries: int


@router.get("/health")
async def health(request: Request) -> dict:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        payload = HealthResponse(status="starting", sessions=0, pending_deliveries=0)
    else:
        payload = HealthResponse(
            status="shutting_down" if runtime.lifecycle.closing else "ok",
            sessions=len(runtime.lifecycle.registry),
            pending_deliveries=runtime.dispatcher.pool.outstanding,
        )
    return success_response(request=request, data=payload)
