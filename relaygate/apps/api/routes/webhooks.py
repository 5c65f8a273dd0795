from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from relaygate.apps.api.deps import (
    Identity,
    enforce_session_quota,
    get_identity,
    get_runtime,
    require_owned_instance,
)
from relaygate.apps.api.response import success_response
from relaygate.services.runtime import Runtime


router = APIRouter(prefix="/instances", tags=["webhooks"])


class WebhookConfigRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    events: list[str] = Field(default_factory=list)
    secret: str = Field(min_length=8, max_length=256)
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True

    model_config = {"extra": "forbid"}


@router.put("/{instance_id}/webhook")
async def configure_webhook(
    instance_id: str,
    payload: WebhookConfigRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    runtime.dispatcher.validate_subscription(
        url=payload.url, events=payload.events, secret=payload.secret, headers=payload.headers
    )
    await enforce_session_quota(runtime, identity, response)
    row = await runtime.dispatcher.configure_subscription(
        instance_id,
        url=payload.url,
        events=payload.events,
        secret=payload.secret,
        headers=payload.headers,
        is_active=payload.is_active,
    )
    # Never echo the signing secret back.
    return success_response(
        request=request,
        data={
            "instance_id": instance_id,
            "url": row.url,
            "events": list(row.events or []),
            "headers": dict(row.headers_json or {}),
            "is_active": row.is_active,
        },
    )


@router.post("/{instance_id}/webhook/test")
async def test_webhook(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    result = await runtime.dispatcher.send_test(instance_id)
    message = "Webhook test delivered successfully" if result.success else f"Webhook test failed: {result.error}"
    return success_response(
        request=request,
        data={
            "success": result.success,
            "status_code": result.status_code,
            "message": message,
        },
    )


@router.get("/{instance_id}/webhook/stats")
async def webhook_stats(
    instance_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    stats = await runtime.dispatcher.delivery_stats(instance_id)
    return success_response(request=request, data=jsonable_encoder(stats))
