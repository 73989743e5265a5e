from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
import logging
from typing import Any, Dict, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import get_settings
from ..errors import NotFoundError, ValidationError
from ..models import Business
from .booking import BookingCoordinator, ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    start: datetime
    end: datetime
    available: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }


def business_timezone(business: Business | None) -> ZoneInfo:
    """Zone used to read a business's wall-clock hours."""
    name = (business.timezone if business else None) or get_settings().booking.timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_business_timezone", extra={"timezone": name})
        return ZoneInfo("UTC")


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """First and last instant of a local calendar day, in UTC."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


class AvailabilityEngine:
    def __init__(self, businesses, hours, services, coordinator: BookingCoordinator) -> None:
        self._businesses = businesses
        self._hours = hours
        self._services = services
        self._coordinator = coordinator

    def resolve_duration_minutes(
        self, service_id: str | None, default_minutes: int
    ) -> int:
        if not service_id:
            return default_minutes
        service = self._services.get(service_id)
        if service is None:
            raise ValidationError(f"Unknown service {service_id!r}")
        if service.duration_minutes and service.duration_minutes > 0:
            return int(service.duration_minutes)
        return default_minutes

    def find_slots(
        self,
        business_id: str,
        range_start: datetime,
        range_end: datetime,
        *,
        service_id: str | None = None,
        staff_id: str | None = None,
        slot_granularity_minutes: int | None = None,
        default_duration_minutes: int | None = None,
    ) -> Iterator[Slot]:
        """Return a lazy iterator of candidate slots between the two instants.

        Arguments are validated eagerly so bad input raises here rather than
        on first iteration. Availability of each slot is looked up only when
        the caller pulls it.
        """
        booking = get_settings().booking
        granularity = (
            booking.slot_granularity_minutes
            if slot_granularity_minutes is None
            else slot_granularity_minutes
        )
        default_duration = (
            booking.default_duration_minutes
            if default_duration_minutes is None
            else default_duration_minutes
        )
        if granularity <= 0:
            raise ValidationError("slot_granularity_minutes must be positive")
        range_start = ensure_utc(range_start)
        range_end = ensure_utc(range_end)
        if range_end < range_start:
            raise ValidationError("range_end must not be before range_start")
        duration = self.resolve_duration_minutes(service_id, default_duration)
        if duration <= 0:
            raise ValidationError("duration_minutes must be positive")
        business = self._businesses.get(business_id)
        if business is None:
            raise NotFoundError(f"Unknown business {business_id!r}")

        return self._iter_slots(
            business,
            range_start,
            range_end,
            staff_id=staff_id,
            step=timedelta(minutes=granularity),
            duration=timedelta(minutes=duration),
        )

    def _iter_slots(
        self,
        business: Business,
        range_start: datetime,
        range_end: datetime,
        *,
        staff_id: str | None,
        step: timedelta,
        duration: timedelta,
    ) -> Iterator[Slot]:
        tz = business_timezone(business)
        day = range_start.astimezone(tz).date()
        last_day = range_end.astimezone(tz).date()

        while day <= last_day:
            row = self._hours.get_for_weekday(business.id, day.weekday())
            if row is not None and row.is_open_day:
                opening = datetime.combine(day, row.open_time, tzinfo=tz)
                closing = datetime.combine(day, row.close_time, tzinfo=tz)
                current = opening
                while current + duration <= closing:
                    start = current.astimezone(UTC)
                    if start > range_end:
                        return
                    if start >= range_start:
                        end = (current + duration).astimezone(UTC)
                        yield Slot(
                            start=start,
                            end=end,
                            available=self._coordinator.is_time_slot_available(
                                business.id, start, end, staff_id=staff_id
                            ),
                        )
                    current += step
            day += timedelta(days=1)
