"""KONDOR — Shared API Dependencies."""

from fastapi import Header, HTTPException, Request

from kondor.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not initialised")
    return runtime


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-Id")) -> str:
    """Tenant id as resolved by the upstream tenant middleware."""
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return tenant_id
