"""iCalendar (RFC 5545) rendering for the Apple subscription feed."""

from __future__ import annotations

from datetime import UTC, datetime
import re
from typing import Iterable, List, Optional

from ..models import Appointment

PRODID = "-//SmallBizAgent//Calendar//EN"
CRLF = "\r\n"

# Anchored to whole lines so escaped text inside a property cannot end a block.
_VEVENT_RE = re.compile(
    r"^BEGIN:VEVENT(?=\r?$).*?^END:VEVENT(?=\r?$)", re.DOTALL | re.MULTILINE
)


def _calendar_header() -> List[str]:
    return [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]


def _feed_header(business_id: str) -> List[str]:
    return _calendar_header() + [
        f"X-WR-CALNAME:Business Calendar {business_id}",
        "X-WR-TIMEZONE:UTC",
        f"X-WR-CALDESC:Appointment calendar for business {business_id}",
    ]


def format_timestamp(value: datetime) -> str:
    """Render an instant as a compact UTC timestamp, e.g. 20250106T100000Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def event_summary(appointment: Appointment) -> str:
    if appointment.service_id:
        return f"Appointment #{appointment.id}"
    return "Appointment"


def render_vevent(
    uid: str, appointment: Appointment, now: Optional[datetime] = None
) -> List[str]:
    stamp = now or datetime.now(UTC)
    return [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{format_timestamp(stamp)}",
        f"DTSTART:{format_timestamp(appointment.start_time)}",
        f"DTEND:{format_timestamp(appointment.end_time)}",
        f"SUMMARY:{escape_text(event_summary(appointment))}",
        f"DESCRIPTION:{escape_text(appointment.notes or '')}",
        "END:VEVENT",
    ]


def render_event_calendar(
    uid: str, appointment: Appointment, now: Optional[datetime] = None
) -> str:
    """A standalone calendar holding exactly one event."""
    lines = _calendar_header() + render_vevent(uid, appointment, now) + ["END:VCALENDAR"]
    return CRLF.join(lines)


def render_feed(business_id: str, vevents: Iterable[str]) -> str:
    """Subscription feed for a business built from pre-rendered VEVENT blocks."""
    lines = _feed_header(business_id)
    lines.extend(vevents)
    lines.append("END:VCALENDAR")
    return CRLF.join(lines)


def extract_vevent(content: str) -> Optional[str]:
    match = _VEVENT_RE.search(content)
    return match.group(0) if match else None


def count_vevents(content: str) -> int:
    return len(_VEVENT_RE.findall(content))
