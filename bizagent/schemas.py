from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import Appointment, AppointmentStatus, CallLog, ReceptionistConfig, Service
from .services.availability import Slot


class SlotOut(BaseModel):
    start: datetime
    end: datetime
    available: bool

    @classmethod
    def from_slot(cls, slot: Slot) -> "SlotOut":
        return cls(start=slot.start, end=slot.end, available=slot.available)


class AvailabilityResponse(BaseModel):
    business_id: str
    slots: List[SlotOut]


class BusinessHoursIn(BaseModel):
    weekday: int = Field(ge=0, le=6, description="Monday=0")
    open_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    close_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    is_closed: bool = False


class BusinessHoursOut(BusinessHoursIn):
    pass


class ServiceIn(BaseModel):
    name: str = Field(min_length=1)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    active: bool = True


class ServiceOut(BaseModel):
    id: str
    name: str
    duration_minutes: Optional[int] = None
    active: bool

    @classmethod
    def from_model(cls, service: Service) -> "ServiceOut":
        return cls(
            id=service.id,
            name=service.name,
            duration_minutes=service.duration_minutes,
            active=service.active,
        )


class AppointmentCreateRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    start_time: datetime
    end_time: Optional[datetime] = None
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None


class AppointmentUpdateRequest(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[AppointmentStatus] = None


class AppointmentOut(BaseModel):
    id: str
    business_id: str
    customer_id: str
    start_time: datetime
    end_time: datetime
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    status: AppointmentStatus
    notes: Optional[str] = None
    google_event_id: Optional[str] = None
    microsoft_event_id: Optional[str] = None
    apple_event_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, appt: Appointment) -> "AppointmentOut":
        return cls(
            id=appt.id,
            business_id=appt.business_id,
            customer_id=appt.customer_id,
            start_time=appt.start_time,
            end_time=appt.end_time,
            staff_id=appt.staff_id,
            service_id=appt.service_id,
            status=appt.status,
            notes=appt.notes,
            google_event_id=appt.google_event_id,
            microsoft_event_id=appt.microsoft_event_id,
            apple_event_id=appt.apple_event_id,
            last_synced_at=appt.last_synced_at,
        )


class IntegrationStatusResponse(BaseModel):
    google: bool
    microsoft: bool
    apple: bool


class SyncResponse(BaseModel):
    google: bool
    microsoft: bool
    apple: bool
    synced: bool


class CalendarDeleteResponse(BaseModel):
    google: bool
    microsoft: bool
    apple: bool


class UrlResponse(BaseModel):
    url: str


# Inbound caller messages. The ``channel`` field selects the variant.


class _CallRequestBase(BaseModel):
    business_id: Optional[str] = None
    caller_id: str = ""
    text: str
    name: Optional[str] = None


class VoiceCallRequest(_CallRequestBase):
    channel: Literal["voice"]
    call_sid: Optional[str] = None


class SmsRequest(_CallRequestBase):
    channel: Literal["sms"]


class ChatRequest(_CallRequestBase):
    channel: Literal["chat"]
    session_id: Optional[str] = None


CallRequest = Annotated[
    Union[VoiceCallRequest, SmsRequest, ChatRequest],
    Field(discriminator="channel"),
]


class TriageResponse(BaseModel):
    action: str
    response: str
    intent: str
    confidence: float
    is_emergency: bool
    is_business_hours: bool
    emergency_severity: int = 0
    response_params: dict = Field(default_factory=dict)


class AppointmentRequestIn(BaseModel):
    customer_id: str = Field(min_length=1)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None
    caller_id: Optional[str] = None
    caller_name: Optional[str] = None
    transcript: Optional[str] = None


class AppointmentRequestOut(BaseModel):
    success: bool
    message: str
    appointment_id: Optional[str] = None
    time_slots: List[SlotOut] = Field(default_factory=list)
    error: Optional[str] = None


class ReceptionistConfigIn(BaseModel):
    greeting: Optional[str] = None
    after_hours_message: Optional[str] = None
    emergency_keywords: List[str] = Field(default_factory=list)
    voicemail_enabled: bool = True
    transfer_phone_numbers: List[str] = Field(default_factory=list)


class ReceptionistConfigOut(ReceptionistConfigIn):
    business_id: str

    @classmethod
    def from_model(cls, config: ReceptionistConfig) -> "ReceptionistConfigOut":
        return cls(
            business_id=config.business_id,
            greeting=config.greeting,
            after_hours_message=config.after_hours_message,
            emergency_keywords=list(config.emergency_keywords),
            voicemail_enabled=config.voicemail_enabled,
            transfer_phone_numbers=list(config.transfer_phone_numbers),
        )


class CallLogOut(BaseModel):
    id: str
    caller_id: str
    caller_name: Optional[str] = None
    transcript: str
    intent_detected: str
    is_emergency: bool
    status: str
    call_time: datetime

    @classmethod
    def from_model(cls, log: CallLog) -> "CallLogOut":
        return cls(
            id=log.id,
            caller_id=log.caller_id,
            caller_name=log.caller_name,
            transcript=log.transcript,
            intent_detected=log.intent_detected,
            is_emergency=log.is_emergency,
            status=log.status,
            call_time=log.call_time,
        )
