from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from ..context import ServiceContext
from ..deps import ensure_business_exists, get_service_context, require_owner_dashboard_auth
from ..errors import ValidationError
from ..models import CalendarProvider
from ..schemas import (
    CalendarDeleteResponse,
    IntegrationStatusResponse,
    SyncResponse,
    UrlResponse,
)
from .scheduling import tenant_appointment

router = APIRouter()


def _provider_or_404(provider: str) -> CalendarProvider:
    try:
        return CalendarProvider(provider.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown calendar provider {provider!r}")


@router.get("/status", response_model=IntegrationStatusResponse)
async def integration_status(
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> IntegrationStatusResponse:
    status = await ctx.calendar.get_integration_status(business_id)
    return IntegrationStatusResponse(**status)


@router.get("/auth-urls")
def auth_urls(
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> Dict[str, str]:
    return ctx.calendar.get_auth_urls(business_id)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    ctx: ServiceContext = Depends(get_service_context),
) -> dict:
    """OAuth redirect target. The tenant comes from the signed state."""
    resolved = _provider_or_404(provider)
    if error:
        raise ValidationError(f"Authorization was denied: {error}")
    if not state:
        raise ValidationError("Missing state parameter")
    integration = await ctx.calendar.handle_oauth_callback(resolved, code or "", state)
    return {
        "provider": resolved.value,
        "business_id": integration.business_id,
        "connected": True,
    }


@router.delete(
    "/{provider}",
    dependencies=[Depends(require_owner_dashboard_auth)],
)
def disconnect(
    provider: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> dict:
    resolved = _provider_or_404(provider)
    if not ctx.calendar.disconnect(business_id, resolved):
        raise HTTPException(status_code=404, detail="Calendar is not connected")
    return {"provider": resolved.value, "disconnected": True}


@router.get("/apple/subscription", response_model=UrlResponse)
def apple_subscription(
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> UrlResponse:
    return UrlResponse(url=ctx.calendar.get_apple_subscription_url(business_id))


@router.get("/appointments/{appointment_id}/ics", response_model=UrlResponse)
async def appointment_ics(
    appointment_id: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> UrlResponse:
    tenant_appointment(ctx, business_id, appointment_id)
    return UrlResponse(url=await ctx.calendar.get_appointment_ics_url(appointment_id))


@router.post("/appointments/{appointment_id}/sync", response_model=SyncResponse)
async def sync_appointment(
    appointment_id: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> SyncResponse:
    tenant_appointment(ctx, business_id, appointment_id)
    result = await ctx.calendar.sync_appointment(appointment_id)
    return SyncResponse(**result.to_dict())


@router.delete("/appointments/{appointment_id}", response_model=CalendarDeleteResponse)
async def remove_from_calendars(
    appointment_id: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> CalendarDeleteResponse:
    """Remove the appointment's events from every calendar; the booking stays."""
    tenant_appointment(ctx, business_id, appointment_id)
    results = await ctx.calendar.delete_appointment(appointment_id)
    return CalendarDeleteResponse(**results)
