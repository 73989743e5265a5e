from __future__ import annotations

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..context import ServiceContext
from ..deps import (
    ensure_business_exists,
    get_business_id,
    get_service_context,
    require_owner_dashboard_auth,
)
from ..models import ReceptionistConfig
from ..schemas import (
    AppointmentRequestIn,
    AppointmentRequestOut,
    CallLogOut,
    CallRequest,
    ReceptionistConfigIn,
    ReceptionistConfigOut,
    SlotOut,
    TriageResponse,
)
from ..services.triage import AppointmentDraft
from .scheduling import sync_in_background

router = APIRouter()


@router.post("/calls", response_model=TriageResponse)
def triage_call(
    request: CallRequest,
    business_id: str = Depends(get_business_id),
    ctx: ServiceContext = Depends(get_service_context),
) -> TriageResponse:
    """Classify an inbound voice call, SMS or chat message.

    The body may name its business; otherwise the X-Business-ID tenant is used.
    """
    if not request.business_id:
        request = request.model_copy(update={"business_id": business_id})
    result = ctx.triage.process_call(request)
    return TriageResponse(
        action=result.action,
        response=result.response,
        intent=result.intent,
        confidence=result.confidence,
        is_emergency=result.is_emergency,
        is_business_hours=result.is_business_hours,
        emergency_severity=result.emergency_severity,
        response_params=result.response_params,
    )


@router.post("/appointment-requests", response_model=AppointmentRequestOut)
def appointment_request(
    payload: AppointmentRequestIn,
    background_tasks: BackgroundTasks,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> AppointmentRequestOut:
    draft = AppointmentDraft(
        start_time=payload.start_time,
        end_time=payload.end_time,
        staff_id=payload.staff_id,
        service_id=payload.service_id,
        notes=payload.notes,
        caller_id=payload.caller_id,
        caller_name=payload.caller_name,
        transcript=payload.transcript,
    )
    result = ctx.triage.process_appointment_request(business_id, payload.customer_id, draft)
    if result.success and result.appointment_id:
        background_tasks.add_task(sync_in_background, ctx.calendar, result.appointment_id)
    return AppointmentRequestOut(
        success=result.success,
        message=result.message,
        appointment_id=result.appointment_id,
        time_slots=[SlotOut.from_slot(s) for s in result.time_slots],
        error=result.error,
    )


@router.get("/calls", response_model=List[CallLogOut])
def list_calls(
    limit: int = Query(default=50, ge=1, le=500),
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> List[CallLogOut]:
    logs = sorted(
        ctx.call_logs.list_for_business(business_id),
        key=lambda log: log.call_time,
        reverse=True,
    )
    return [CallLogOut.from_model(log) for log in logs[:limit]]


@router.get("/config", response_model=ReceptionistConfigOut)
def get_config(
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> ReceptionistConfigOut:
    return ReceptionistConfigOut.from_model(ctx.triage.receptionist_config(business_id))


@router.put(
    "/config",
    response_model=ReceptionistConfigOut,
    dependencies=[Depends(require_owner_dashboard_auth)],
)
def update_config(
    payload: ReceptionistConfigIn,
    business_id: str = Depends(ensure_business_exists),
    ctx: ServiceContext = Depends(get_service_context),
) -> ReceptionistConfigOut:
    config = ReceptionistConfig(
        business_id=business_id,
        greeting=payload.greeting,
        after_hours_message=payload.after_hours_message,
        emergency_keywords=[k.strip().lower() for k in payload.emergency_keywords if k.strip()],
        voicemail_enabled=payload.voicemail_enabled,
        transfer_phone_numbers=list(payload.transfer_phone_numbers),
    )
    return ReceptionistConfigOut.from_model(ctx.receptionist_configs.upsert(config))
