from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import get_settings
from ..errors import NotFoundError
from ..metrics import metrics
from ..models import WEEKDAY_NAMES, BusinessHours, ReceptionistConfig
from .availability import AvailabilityEngine, Slot, business_timezone, day_bounds
from .booking import BookingCoordinator, BookingRequest, ensure_utc

logger = logging.getLogger(__name__)

# Checked in order; the first category with any match wins.
INTENT_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("appointment", ["schedule", "appointment", "book", "reserve", "set up a time", "make an appointment"]),
    ("inquiry", ["price", "cost", "estimate", "how much", "information", "details", "question"]),
    ("status", ["status", "update", "progress", "how is", "when will", "completion"]),
    ("complaint", ["problem", "issue", "unhappy", "dissatisfied", "poor", "bad", "complaint"]),
    ("payment", ["pay", "payment", "invoice", "bill", "receipt", "charge", "credit card"]),
    ("location", ["address", "where", "location", "directions", "how to get", "find you"]),
    ("hours", ["hours", "open", "close", "time", "schedule", "when are you open"]),
    ("services", ["service", "offer", "provide", "do you", "can you", "available"]),
]

ERROR_RESPONSE = (
    "I apologize, but I am experiencing a technical issue. "
    "Please try again later or leave a message."
)


@dataclass
class TriageResult:
    action: str
    response: str
    intent: str
    confidence: float
    is_emergency: bool
    is_business_hours: bool
    emergency_severity: int = 0
    response_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AppointmentDraft:
    """Whatever booking details a conversation has gathered so far."""

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None
    caller_id: Optional[str] = None
    caller_name: Optional[str] = None
    transcript: Optional[str] = None


@dataclass
class AppointmentResponse:
    success: bool
    message: str
    appointment_id: Optional[str] = None
    time_slots: List[Slot] = field(default_factory=list)
    error: Optional[str] = None


def detect_emergency(text: str, keywords: List[str]) -> List[str]:
    lowered = text.lower()
    return [k for k in keywords if k and k.lower() in lowered]


def detect_intent(text: str) -> Tuple[str, float]:
    lowered = text.lower()
    for intent, patterns in INTENT_KEYWORDS:
        matched = [p for p in patterns if p in lowered]
        if matched:
            return intent, min(0.95, 0.7 + 0.1 * (len(matched) - 1))
    return "general", 0.0


def format_time_12h(value: time | None) -> str:
    if value is None:
        return ""
    period = "PM" if value.hour >= 12 else "AM"
    hour = value.hour % 12 or 12
    return f"{hour}:{value.minute:02d} {period}"


def describe_hours(rows: List[BusinessHours]) -> str:
    parts = []
    for row in rows:
        day = WEEKDAY_NAMES[row.weekday].capitalize()
        if row.is_open_day:
            parts.append(
                f"{day}: {format_time_12h(row.open_time)} to {format_time_12h(row.close_time)}"
            )
        else:
            parts.append(f"{day}: Closed")
    return "Our business hours are: " + ", ".join(parts)


class CallTriageEngine:
    """Turns caller text into an intent and a receptionist action."""

    def __init__(
        self,
        businesses,
        hours,
        services,
        receptionist_configs,
        call_logs,
        coordinator: BookingCoordinator,
        availability: AvailabilityEngine,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._businesses = businesses
        self._hours = hours
        self._services = services
        self._configs = receptionist_configs
        self._call_logs = call_logs
        self._coordinator = coordinator
        self._availability = availability
        self._clock = clock or (lambda: datetime.now(UTC))

    def _require_business(self, business_id: str):
        business = self._businesses.get(business_id)
        if business is None:
            raise NotFoundError(f"Unknown business {business_id!r}")
        return business

    def receptionist_config(self, business_id: str) -> ReceptionistConfig:
        config = self._configs.get(business_id)
        if config is not None:
            return config
        defaults = get_settings().receptionist
        return ReceptionistConfig(
            business_id=business_id,
            greeting=defaults.default_greeting,
            after_hours_message=defaults.default_after_hours_message,
            emergency_keywords=list(defaults.emergency_keywords),
            transfer_phone_numbers=(
                [defaults.emergency_transfer_number]
                if defaults.emergency_transfer_number
                else []
            ),
        )

    def is_business_hours(self, business, now: datetime | None = None) -> bool:
        local_now = ensure_utc(now or self._clock()).astimezone(business_timezone(business))
        row = self._hours.get_for_weekday(business.id, local_now.weekday())
        if row is None or not row.is_open_day:
            return False
        current = local_now.time().replace(second=0, microsecond=0)
        return row.open_time <= current <= row.close_time

    def process_call(self, request) -> TriageResult:
        business = self._require_business(request.business_id)
        try:
            return self._triage(business, request)
        except Exception:
            metrics.triage_failures += 1
            logger.exception(
                "call_triage_failed",
                extra={"business_id": business.id, "channel": request.channel},
            )
            return TriageResult(
                action="handle_error",
                response=ERROR_RESPONSE,
                intent="error",
                confidence=1.0,
                is_emergency=False,
                is_business_hours=True,
            )

    def _triage(self, business, request) -> TriageResult:
        config = self.receptionist_config(business.id)
        text = request.text or ""
        in_hours = self.is_business_hours(business)

        keywords = config.emergency_keywords or get_settings().receptionist.emergency_keywords
        matched_keywords = detect_emergency(text, keywords)
        is_emergency = bool(matched_keywords)
        severity = min(len(matched_keywords), 3)

        if is_emergency:
            intent, confidence = "emergency", 0.9 + 0.03 * severity
        else:
            intent, confidence = detect_intent(text)

        greeting = f"Hello {request.name}. " if request.name else ""
        params: Dict[str, Any] = {}

        if is_emergency:
            action = "transfer_emergency"
            response = (
                f"{greeting}I understand this is an emergency situation. "
                "I'll connect you with our on-call staff immediately."
            )
            transfer_to = (
                config.transfer_phone_numbers[0]
                if config.transfer_phone_numbers
                else get_settings().receptionist.emergency_transfer_number
            )
            params = {
                "emergency_severity": severity,
                "matched_keywords": matched_keywords,
                "transfer_to": transfer_to,
            }
        elif not in_hours:
            after_hours = (
                config.after_hours_message
                or get_settings().receptionist.default_after_hours_message
            )
            if intent == "appointment":
                action = "schedule_appointment"
                response = (
                    f"{greeting}{after_hours} I can help you schedule an "
                    "appointment for when we're open."
                )
            elif config.voicemail_enabled:
                action = "take_voicemail"
                response = f"{greeting}{after_hours} Would you like to leave a voicemail?"
            else:
                action = "provide_info"
                response = (
                    f"{greeting}{after_hours} I'd be happy to provide information "
                    "about our services or take a message."
                )
        else:
            action, response, params = self._in_hours_response(business.id, intent, config)
            response = greeting + response

        metrics.record_intent(intent)
        if is_emergency:
            metrics.emergency_calls += 1
        logger.info(
            "call_triaged",
            extra={
                "business_id": business.id,
                "channel": request.channel,
                "intent": intent,
                "action": action,
                "is_emergency": is_emergency,
            },
        )
        return TriageResult(
            action=action,
            response=response,
            intent=intent,
            confidence=round(confidence, 4),
            is_emergency=is_emergency,
            is_business_hours=in_hours,
            emergency_severity=severity,
            response_params=params,
        )

    def _in_hours_response(
        self, business_id: str, intent: str, config: ReceptionistConfig
    ) -> Tuple[str, str, Dict[str, Any]]:
        if intent == "appointment":
            return (
                "schedule_appointment",
                "I'd be happy to help you schedule an appointment. "
                "What day and time works best for you?",
                {},
            )
        if intent == "inquiry":
            return (
                "provide_info",
                "I'd be happy to provide information about our services and pricing. "
                "What specific service are you interested in?",
                {},
            )
        if intent == "status":
            return (
                "check_status",
                "I can help you check the status of your service. Could you please "
                "provide your name or phone number so I can look that up for you?",
                {},
            )
        if intent == "complaint":
            return (
                "transfer_to_manager",
                "I'm sorry to hear you're experiencing an issue. Let me connect you "
                "with our customer service manager who can help resolve this for you.",
                {},
            )
        if intent == "payment":
            return (
                "payment_options",
                "I can help you with payment options or questions about your invoice. "
                "What specifically do you need assistance with?",
                {},
            )
        if intent == "location":
            return (
                "provide_location",
                "I'd be happy to provide our location and directions.",
                {},
            )
        if intent == "hours":
            rows = self._hours.list_for_business(business_id)
            return "provide_hours", describe_hours(rows), {}
        if intent == "services":
            names = [s.name for s in self._services.list_for_business(business_id, active_only=True)]
            offered = f" including {', '.join(names)}" if names else ""
            return (
                "list_services",
                f"We offer a variety of services{offered}. "
                "Is there a specific service you're interested in?",
                {"services": names},
            )
        greeting = config.greeting or get_settings().receptionist.default_greeting
        return "continue_conversation", greeting, {}

    def process_appointment_request(
        self, business_id: str, customer_id: str, draft: AppointmentDraft
    ) -> AppointmentResponse:
        business = self._require_business(business_id)

        if draft.start_time is not None:
            start = ensure_utc(draft.start_time)
            if draft.end_time is not None:
                end = ensure_utc(draft.end_time)
            else:
                minutes = self._availability.resolve_duration_minutes(
                    draft.service_id, get_settings().booking.default_duration_minutes
                )
                end = start + timedelta(minutes=minutes)

            if not self._coordinator.is_time_slot_available(
                business_id, start, end, staff_id=draft.staff_id
            ):
                return self._same_day_alternatives(business, start, draft)

            notes = "Booked by virtual receptionist"
            if draft.notes:
                notes = f"{notes}: {draft.notes}"
            result = self._coordinator.create_appointment_safely(
                BookingRequest(
                    business_id=business_id,
                    customer_id=customer_id,
                    start_time=start,
                    end_time=end,
                    staff_id=draft.staff_id,
                    service_id=draft.service_id,
                    notes=notes,
                )
            )
            if not result.success or result.appointment is None:
                if result.code == "conflict":
                    # Lost the slot between the check and the booking lock.
                    return self._same_day_alternatives(business, start, draft)
                return AppointmentResponse(
                    success=False,
                    message="Unable to schedule appointment",
                    error=result.error or "Unknown error occurred",
                )
            self._call_logs.create(
                business_id=business_id,
                caller_id=draft.caller_id or "",
                caller_name=draft.caller_name,
                transcript=draft.transcript or "Appointment scheduling conversation",
                intent_detected="appointment",
                is_emergency=False,
                status="answered",
            )
            local_start = start.astimezone(business_timezone(business))
            return AppointmentResponse(
                success=True,
                appointment_id=result.appointment.id,
                message=(
                    "Appointment successfully scheduled for "
                    f"{local_start.strftime('%A, %B %d at %I:%M %p')}"
                ),
            )

        now = ensure_utc(self._clock())
        lookahead = get_settings().booking.lookahead_days
        slots = [
            s
            for s in self._availability.find_slots(
                business_id,
                now,
                now + timedelta(days=lookahead),
                service_id=draft.service_id,
                staff_id=draft.staff_id,
            )
            if s.available
        ]
        if not slots:
            return AppointmentResponse(
                success=False,
                message=(
                    f"No available appointment slots in the next {lookahead} days. "
                    "Would you like to check availability further in the future?"
                ),
            )
        return AppointmentResponse(
            success=False,
            message=f"Here are the available appointment slots in the next {lookahead} days.",
            time_slots=slots,
        )

    def _same_day_alternatives(
        self, business, start: datetime, draft: AppointmentDraft
    ) -> AppointmentResponse:
        tz = business_timezone(business)
        day_start, day_end = day_bounds(start.astimezone(tz).date(), tz)
        alternatives = [
            s
            for s in self._availability.find_slots(
                business.id,
                day_start,
                day_end,
                service_id=draft.service_id,
                staff_id=draft.staff_id,
            )
            if s.available
        ]
        return AppointmentResponse(
            success=False,
            message=(
                "The requested time is not available. Here are some alternative "
                "times that are available."
            ),
            time_slots=alternatives,
            error="Requested time slot is already booked.",
        )
