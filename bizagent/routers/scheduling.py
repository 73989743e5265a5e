from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from ..config import get_settings
from ..context import ServiceContext
from ..deps import ensure_business_exists, get_service_context, require_owner_dashboard_auth
from ..errors import ConflictError, ValidationError
from ..models import Appointment, AppointmentStatus, BusinessHours
from ..repositories import format_hhmm, parse_hhmm
from ..schemas import (
    AppointmentCreateRequest,
    AppointmentOut,
    AppointmentUpdateRequest,
    AvailabilityResponse,
    BusinessHoursIn,
    BusinessHoursOut,
    ServiceIn,
    ServiceOut,
    SlotOut,
)
from ..services.availability import business_timezone, day_bounds
from ..services.booking import BookingRequest, ensure_utc
from ..services.calendar_sync import CalendarSyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


async def sync_in_background(calendar: CalendarSyncOrchestrator, appointment_id: str) -> None:
    """Push a booking change to connected calendars after the response is sent."""
    try:
        await calendar.sync_appointment(appointment_id)
    except Exception:
        logger.warning(
            "background_calendar_sync_failed",
            extra={"appointment_id": appointment_id},
            exc_info=True,
        )


async def remove_in_background(calendar: CalendarSyncOrchestrator, appointment_id: str) -> None:
    try:
        await calendar.delete_appointment(appointment_id)
    except Exception:
        logger.warning(
            "background_calendar_delete_failed",
            extra={"appointment_id": appointment_id},
            exc_info=True,
        )


def tenant_appointment(ctx: ServiceContext, business_id: str, appointment_id: str) -> Appointment:
    appt = ctx.appointments.get(appointment_id)
    if appt is None or appt.business_id != business_id:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appt


def _same_day_alternatives(ctx: ServiceContext, business_id: str, start: datetime, service_id, staff_id):
    business = ctx.businesses.get(business_id)
    tz = business_timezone(business)
    day_start, day_end = day_bounds(start.astimezone(tz).date(), tz)
    return [
        SlotOut.from_slot(s).model_dump(mode="json")
        for s in ctx.availability.find_slots(
            business_id, day_start, day_end, service_id=service_id, staff_id=staff_id
        )
        if s.available
    ]


@router.get("/availability", response_model=AvailabilityResponse)
def get_availability(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    service_id: str | None = Query(default=None),
    staff_id: str | None = Query(default=None),
    granularity_minutes: int | None = Query(default=None),
    only_available: bool = Query(default=False),
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> AvailabilityResponse:
    range_start = ensure_utc(start) if start else datetime.now(UTC)
    range_end = (
        ensure_utc(end)
        if end
        else range_start + timedelta(days=get_settings().booking.lookahead_days)
    )
    slots = ctx.availability.find_slots(
        business_id,
        range_start,
        range_end,
        service_id=service_id,
        staff_id=staff_id,
        slot_granularity_minutes=granularity_minutes,
    )
    return AvailabilityResponse(
        business_id=business_id,
        slots=[SlotOut.from_slot(s) for s in slots if s.available or not only_available],
    )


@router.get("/hours", response_model=List[BusinessHoursOut])
def get_hours(
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> List[BusinessHoursOut]:
    return [
        BusinessHoursOut(
            weekday=h.weekday,
            open_time=format_hhmm(h.open_time),
            close_time=format_hhmm(h.close_time),
            is_closed=h.is_closed,
        )
        for h in ctx.hours.list_for_business(business_id)
    ]


@router.put(
    "/hours",
    response_model=List[BusinessHoursOut],
    dependencies=[Depends(require_owner_dashboard_auth)],
)
def replace_hours(
    payload: List[BusinessHoursIn],
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> List[BusinessHoursOut]:
    rows: list[BusinessHours] = []
    seen: set[int] = set()
    for item in payload:
        if item.weekday in seen:
            raise ValidationError(f"Duplicate hours for weekday {item.weekday}")
        seen.add(item.weekday)
        open_time = parse_hhmm(item.open_time)
        close_time = parse_hhmm(item.close_time)
        if not item.is_closed:
            if open_time is None or close_time is None:
                raise ValidationError("open_time and close_time are required unless closed")
            if close_time <= open_time:
                raise ValidationError("close_time must be after open_time")
        rows.append(
            BusinessHours(
                business_id=business_id,
                weekday=item.weekday,
                open_time=open_time,
                close_time=close_time,
                is_closed=item.is_closed,
            )
        )
    ctx.hours.replace(business_id, rows)
    return get_hours(business_id=business_id, ctx=ctx)


@router.get("/services", response_model=List[ServiceOut])
def list_services(
    active_only: bool = Query(default=False),
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> List[ServiceOut]:
    return [
        ServiceOut.from_model(s)
        for s in ctx.services.list_for_business(business_id, active_only=active_only)
    ]


@router.post(
    "/services",
    response_model=ServiceOut,
    status_code=201,
    dependencies=[Depends(require_owner_dashboard_auth)],
)
def create_service(
    payload: ServiceIn,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> ServiceOut:
    service = ctx.services.create(
        business_id=business_id,
        name=payload.name,
        duration_minutes=payload.duration_minutes,
        active=payload.active,
    )
    return ServiceOut.from_model(service)


@router.post("/appointments", response_model=AppointmentOut, status_code=201)
def create_appointment(
    payload: AppointmentCreateRequest,
    background_tasks: BackgroundTasks,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> AppointmentOut:
    start = ensure_utc(payload.start_time)
    if payload.end_time is not None:
        end = ensure_utc(payload.end_time)
    else:
        minutes = ctx.availability.resolve_duration_minutes(
            payload.service_id, get_settings().booking.default_duration_minutes
        )
        end = start + timedelta(minutes=minutes)

    result = ctx.booking.create_appointment_safely(
        BookingRequest(
            business_id=business_id,
            customer_id=payload.customer_id,
            start_time=start,
            end_time=end,
            staff_id=payload.staff_id,
            service_id=payload.service_id,
            notes=payload.notes,
        )
    )
    if not result.success or result.appointment is None:
        raise ConflictError(
            result.error or "The requested time slot is not available",
            alternatives=_same_day_alternatives(
                ctx, business_id, start, payload.service_id, payload.staff_id
            ),
        )
    background_tasks.add_task(sync_in_background, ctx.calendar, result.appointment.id)
    return AppointmentOut.from_model(result.appointment)


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment(
    appointment_id: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> AppointmentOut:
    return AppointmentOut.from_model(tenant_appointment(ctx, business_id, appointment_id))


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdateRequest,
    background_tasks: BackgroundTasks,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> AppointmentOut:
    appt = tenant_appointment(ctx, business_id, appointment_id)

    if payload.start_time is not None or payload.end_time is not None:
        start = ensure_utc(payload.start_time) if payload.start_time else appt.start_time
        end = ensure_utc(payload.end_time) if payload.end_time else start + (
            appt.end_time - appt.start_time
        )
        # Time and status are committed together or not at all.
        result = ctx.booking.reschedule_appointment(
            appointment_id, start, end, status=payload.status
        )
        if not result.success:
            raise ConflictError(
                result.error or "The requested time slot is not available",
                alternatives=_same_day_alternatives(
                    ctx, business_id, start, appt.service_id, appt.staff_id
                ),
            )
        appt = result.appointment
    elif payload.status is not None:
        result = ctx.booking.update_status(appointment_id, payload.status)
        if not result.success:
            raise ConflictError(result.error or "The appointment time is no longer available")
        appt = result.appointment

    if appt.status is AppointmentStatus.CANCELLED:
        background_tasks.add_task(remove_in_background, ctx.calendar, appointment_id)
    else:
        background_tasks.add_task(sync_in_background, ctx.calendar, appointment_id)
    return AppointmentOut.from_model(appt)


@router.delete("/appointments/{appointment_id}")
async def delete_appointment(
    appointment_id: str,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> dict:
    tenant_appointment(ctx, business_id, appointment_id)
    calendar_results = await ctx.calendar.delete_appointment(appointment_id)
    ctx.appointments.delete(appointment_id)
    logger.info(
        "appointment_deleted",
        extra={"business_id": business_id, "appointment_id": appointment_id},
    )
    return {"deleted": True, "calendar": calendar_results}
