from __future__ import annotations

from fastapi import Header, HTTPException, Request, Response, status
from pydantic import BaseModel

from relaygate.apps.api.response import rate_limit_headers
from relaygate.core.errors import NotFoundError
from relaygate.services.quota import ACTION_SESSION, QuotaDecision
from relaygate.services.runtime import Runtime
from relaygate.services.sessions.lifecycle import SessionSnapshot


class Identity(BaseModel):
    # Caller identity resolved by the upstream auth layer and forwarded in headers.
    tenant_id: str
    credential_id: str


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Gateway runtime is not ready"},
        )
    return runtime


def get_identity(
    x_tenant_id: str | None = Header(default=None),
    x_credential_id: str | None = Header(default=None),
) -> Identity:
    tenant_id = (x_tenant_id or "").strip()
    credential_id = (x_credential_id or "").strip()
    if not tenant_id or not credential_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-Tenant-Id or X-Credential-Id"},
        )
    return Identity(tenant_id=tenant_id, credential_id=credential_id)


def apply_rate_limit_headers(response: Response, decision: QuotaDecision) -> None:
    # Surface the binding window so clients can pace themselves.
    if decision.degraded:
        response.headers["X-RateLimit-Status"] = "degraded"
        return
    if decision.limit is None or decision.used is None or decision.reset_at is None:
        return
    response.headers.update(
        rate_limit_headers(
            limit=decision.limit,
            remaining=decision.limit - decision.used,
            reset_at=decision.reset_at,
            scope=decision.scope,
        )
    )


async def require_owned_instance(runtime: Runtime, instance_id: str, identity: Identity) -> SessionSnapshot:
    # Hide other tenants' instances behind the same 404 as unknown ids.
    snapshot = await runtime.lifecycle.status(instance_id)
    if snapshot.tenant_id != identity.tenant_id:
        raise NotFoundError(f"Instance {instance_id} not found")
    return snapshot


async def enforce_session_quota(runtime: Runtime, identity: Identity, response: Response) -> QuotaDecision:
    # Spend one session action; call only after the body parsed and ownership was checked.
    decision = await runtime.quota.enforce(
        ACTION_SESSION, credential_id=identity.credential_id, tenant_id=identity.tenant_id
    )
    apply_rate_limit_headers(response, decision)
    return decision
