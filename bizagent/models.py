from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(UTC)


WEEKDAY_NAMES = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Only these statuses block a time range.
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    APPLE = "apple"

    @property
    def event_field(self) -> str:
        """Name of the Appointment attribute holding this provider's event id."""
        return f"{self.value}_event_id"


@dataclass
class Business:
    id: str
    name: str
    timezone: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class BusinessHours:
    business_id: str
    weekday: int  # Monday=0
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    is_closed: bool = False

    @property
    def is_open_day(self) -> bool:
        return (
            not self.is_closed
            and self.open_time is not None
            and self.close_time is not None
        )


@dataclass
class Service:
    id: str
    business_id: str
    name: str
    duration_minutes: Optional[int] = None
    active: bool = True


@dataclass
class Appointment:
    id: str
    business_id: str
    customer_id: str
    start_time: datetime
    end_time: datetime
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: Optional[str] = None
    google_event_id: Optional[str] = None
    microsoft_event_id: Optional[str] = None
    apple_event_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def event_id_for(self, provider: CalendarProvider) -> Optional[str]:
        return getattr(self, provider.event_field)


@dataclass
class CalendarIntegration:
    business_id: str
    provider: CalendarProvider
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class ReceptionistConfig:
    business_id: str
    greeting: Optional[str] = None
    after_hours_message: Optional[str] = None
    emergency_keywords: List[str] = field(default_factory=list)
    voicemail_enabled: bool = True
    transfer_phone_numbers: List[str] = field(default_factory=list)


@dataclass
class CallLog:
    id: str
    business_id: str
    caller_id: str
    transcript: str
    intent_detected: str
    is_emergency: bool = False
    caller_name: Optional[str] = None
    status: str = "answered"
    call_time: datetime = field(default_factory=_utcnow)


def new_appointment_id() -> str:
    return str(uuid4())


def new_service_id() -> str:
    return str(uuid4())


def new_call_log_id() -> str:
    return str(uuid4())
