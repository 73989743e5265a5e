from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status

from .config import get_settings
from .context import ServiceContext, get_context
from .repositories import DEFAULT_BUSINESS_ID


def get_service_context() -> ServiceContext:
    """FastAPI dependency; tests override it with an isolated context."""
    return get_context()


async def get_business_id(
    x_business_id: str | None = Header(default=None, alias="X-Business-ID"),
) -> str:
    """Resolve the current tenant, falling back to the default business."""
    # FastAPI injects Header objects when called directly; normalize to str.
    if not isinstance(x_business_id, str) or not x_business_id.strip():
        return DEFAULT_BUSINESS_ID
    return x_business_id.strip()


async def ensure_business_exists(
    business_id: str = Depends(get_business_id),
    ctx: ServiceContext = Depends(get_service_context),
) -> str:
    if ctx.businesses.get(business_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Business not found",
        )
    return business_id


async def require_owner_dashboard_auth(
    x_owner_token: str | None = Header(default=None, alias="X-Owner-Token"),
) -> None:
    """Optional owner authentication for management routes.

    - If OWNER_DASHBOARD_TOKEN is not set, these routes remain open
      (development mode).
    - If set, callers must send a matching X-Owner-Token header or receive
      401 Unauthorized.
    """
    expected = get_settings().owner_dashboard_token
    if not expected:
        return
    if x_owner_token != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid owner dashboard token",
        )
