from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from relaygate.apps.api.deps import (
    Identity,
    enforce_session_quota,
    get_identity,
    get_runtime,
    require_owned_instance,
)
from relaygate.apps.api.response import success_response
from relaygate.core.errors import NotFoundError
from relaygate.services.runtime import Runtime


router = APIRouter(prefix="/instances", tags=["instances"])


class ForceDisconnectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

    model_config = {"extra": "forbid"}


@router.get("")
async def list_instances(
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # Live view of the caller's sessions known to this gateway process.
    snapshots = runtime.lifecycle.snapshots(identity.tenant_id)
    return success_response(request=request, data=[snapshot.to_dict() for snapshot in snapshots])


@router.post("/{instance_id}/connect")
async def connect_instance(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    await runtime.lifecycle.ensure_initialized(instance_id)
    snapshot = await runtime.lifecycle.connect(instance_id)
    return success_response(request=request, data=snapshot.to_dict())


@router.post("/{instance_id}/disconnect")
async def disconnect_instance(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    await runtime.lifecycle.ensure_initialized(instance_id)
    snapshot = await runtime.lifecycle.disconnect(instance_id)
    return success_response(request=request, data=snapshot.to_dict())


@router.post("/{instance_id}/restart")
async def restart_instance(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    await runtime.lifecycle.ensure_initialized(instance_id)
    snapshot = await runtime.lifecycle.restart(instance_id)
    return success_response(request=request, data=snapshot.to_dict())


@router.post("/{instance_id}/logout")
async def logout_instance(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    await runtime.lifecycle.ensure_initialized(instance_id)
    snapshot = await runtime.lifecycle.logout(instance_id)
    return success_response(request=request, data=snapshot.to_dict())


@router.post("/{instance_id}/force-disconnect")
async def force_disconnect_instance(
    instance_id: str,
    payload: ForceDisconnectRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    await runtime.lifecycle.ensure_initialized(instance_id)
    snapshot = await runtime.lifecycle.force_disconnect(instance_id, payload.reason)
    return success_response(request=request, data=snapshot.to_dict())


@router.delete("/{instance_id}/session")
async def remove_instance_session(
    instance_id: str,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # Called by the instance CRUD layer before it deletes the row.
    await require_owned_instance(runtime, instance_id, identity)
    await enforce_session_quota(runtime, identity, response)
    removed = await runtime.lifecycle.remove(instance_id)
    return success_response(request=request, data={"instance_id": instance_id, "removed": removed})


@router.get("/{instance_id}/status")
async def get_instance_status(
    instance_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    snapshot = await require_owned_instance(runtime, instance_id, identity)
    return success_response(request=request, data=snapshot.to_dict())


@router.get("/{instance_id}/qr")
async def get_instance_pairing_code(
    instance_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    snapshot = await require_owned_instance(runtime, instance_id, identity)
    code = runtime.lifecycle.get_pairing_code(instance_id) if snapshot.registered else None
    if code is None:
        raise NotFoundError(f"No active pairing code for instance {instance_id}")
    return success_response(request=request, data=code.to_dict())
