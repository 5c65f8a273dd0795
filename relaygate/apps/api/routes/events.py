from __future__ import annotations

import json
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from relaygate.apps.api.deps import Identity, get_identity, get_runtime, require_owned_instance
from relaygate.core.errors import NotFoundError
from relaygate.services.runtime import Runtime
from relaygate.services.status_publisher import StatusSubscription


router = APIRouter(tags=["events"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


def _sse_message(payload: dict) -> str:
    # SSE framing: the event name follows the payload type and data is one compact JSON line.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {payload.get('type', 'message')}\ndata: {data}\n\n"


def _stream(request: Request, subscription: StatusSubscription, heartbeat_s: float) -> StreamingResponse:
    async def event_stream() -> AsyncGenerator[str, None]:
        try:
            while True:
                if await request.is_disconnected():
                    break
                item = await subscription.get(timeout=heartbeat_s)
                if item is None:
                    # Comment frames keep idle proxies from closing the stream.
                    yield ": heartbeat\n\n"
                    continue
                yield _sse_message(item)
        finally:
            subscription.close()

    return StreamingResponse(event_stream(), headers=_SSE_HEADERS, media_type="text/event-stream")


@router.get("/instances/{instance_id}/events")
async def instance_events(
    instance_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> StreamingResponse:
    await require_owned_instance(runtime, instance_id, identity)
    subscription = runtime.publisher.subscribe_instance(instance_id)
    return _stream(request, subscription, float(runtime.settings.status_stream_heartbeat_s))


@router.get("/tenants/{tenant_id}/events")
async def tenant_events(
    tenant_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> StreamingResponse:
    if tenant_id != identity.tenant_id:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    subscription = runtime.publisher.subscribe_tenant(tenant_id)
    return _stream(request, subscription, float(runtime.settings.status_stream_heartbeat_s))
