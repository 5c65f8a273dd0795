from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from relaygate.apps.api.deps import (
    Identity,
    apply_rate_limit_headers,
    get_identity,
    get_runtime,
    require_owned_instance,
)
from relaygate.apps.api.response import success_response
from relaygate.services.runtime import Runtime


router = APIRouter(prefix="/instances", tags=["messages"])


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=1, max_length=128)
    # Opaque to the gateway; forwarded to the protocol client as-is.
    content: dict[str, Any]

    model_config = {"extra": "forbid"}


@router.post("/{instance_id}/messages")
async def send_message(
    instance_id: str,
    payload: SendMessageRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # The message gateway applies the message quota itself, exactly once.
    await require_owned_instance(runtime, instance_id, identity)
    sent = await runtime.messages.send_message(
        instance_id,
        credential_id=identity.credential_id,
        tenant_id=identity.tenant_id,
        target=payload.to,
        content=payload.content,
    )
    apply_rate_limit_headers(response, sent.quota)
    return success_response(
        request=request,
        data={
            "message_id": sent.message_id,
            "to": sent.target_id,
            "message_type": sent.message_type,
            "timestamp": sent.timestamp,
            "status": "sent",
        },
    )
