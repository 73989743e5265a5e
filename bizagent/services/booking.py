from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import threading
from typing import Dict, Iterator, Optional

from ..errors import NotFoundError, ValidationError
from ..metrics import metrics
from ..models import ACTIVE_STATUSES, Appointment, AppointmentStatus

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class BookingRequest:
    business_id: str
    customer_id: str
    start_time: datetime
    end_time: datetime
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class BookingResult:
    success: bool
    appointment: Optional[Appointment] = None
    error: Optional[str] = None
    code: Optional[str] = None


class BookingLocks:
    """Per-business locks serializing check + commit within one process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, business_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(business_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[business_id] = lock
            return lock


class BookingCoordinator:
    """Sole authority on whether an appointment may be stored.

    Every mutation that can make two active appointments overlap runs inside
    ``_serialized(business_id)``: the in-process keyed lock first, then the
    storage-level business lock so separate workers sharing a database wait
    on each other as well.
    """

    def __init__(self, businesses, appointments, services, locks: BookingLocks | None = None) -> None:
        self._businesses = businesses
        self._appointments = appointments
        self._services = services
        self._locks = locks or BookingLocks()

    @contextmanager
    def _serialized(self, business_id: str) -> Iterator[None]:
        with self._locks.get(business_id):
            with self._businesses.lock(business_id):
                yield

    def _require_business(self, business_id: str) -> None:
        if self._businesses.get(business_id) is None:
            raise NotFoundError(f"Unknown business {business_id!r}")

    def _require_appointment(self, appointment_id: str) -> Appointment:
        appt = self._appointments.get(appointment_id)
        if appt is None:
            raise NotFoundError(f"Unknown appointment {appointment_id!r}")
        return appt

    def is_time_slot_available(
        self,
        business_id: str,
        start: datetime,
        end: datetime,
        staff_id: str | None = None,
        exclude_appointment_id: str | None = None,
    ) -> bool:
        start = ensure_utc(start)
        end = ensure_utc(end)
        existing = self._appointments.list_for_business(
            business_id, active_only=True, staff_id=staff_id
        )
        for appt in existing:
            if exclude_appointment_id and appt.id == exclude_appointment_id:
                continue
            # Half-open intervals: touching at a boundary is not an overlap.
            if start < ensure_utc(appt.end_time) and end > ensure_utc(appt.start_time):
                return False
        return True

    @staticmethod
    def _parse_status(status: AppointmentStatus | str) -> AppointmentStatus:
        try:
            return AppointmentStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown status {status!r}") from exc

    def _validate_range(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            metrics.booking_validation_errors += 1
            raise ValidationError("end_time must be after start_time")
        return start, end

    def create_appointment_safely(self, data: BookingRequest) -> BookingResult:
        """Check availability and store the appointment as one step.

        Returns a failed result with ``code="conflict"`` when the slot is
        taken; nothing is written in that case.
        """
        start, end = self._validate_range(data.start_time, data.end_time)
        if not data.customer_id:
            metrics.booking_validation_errors += 1
            raise ValidationError("customer_id is required")
        self._require_business(data.business_id)
        if data.service_id and self._services.get(data.service_id) is None:
            raise ValidationError(f"Unknown service {data.service_id!r}")

        with self._serialized(data.business_id):
            if not self.is_time_slot_available(
                data.business_id, start, end, staff_id=data.staff_id
            ):
                metrics.booking_conflicts += 1
                logger.info(
                    "booking_conflict",
                    extra={
                        "business_id": data.business_id,
                        "start": start.isoformat(),
                        "end": end.isoformat(),
                    },
                )
                return BookingResult(
                    success=False,
                    error="The requested time slot is not available",
                    code="conflict",
                )
            appt = self._appointments.create(
                business_id=data.business_id,
                customer_id=data.customer_id,
                start_time=start,
                end_time=end,
                staff_id=data.staff_id,
                service_id=data.service_id,
                notes=data.notes,
                status=AppointmentStatus.SCHEDULED,
            )

        metrics.appointments_scheduled += 1
        logger.info(
            "appointment_booked",
            extra={"business_id": appt.business_id, "appointment_id": appt.id},
        )
        return BookingResult(success=True, appointment=appt)

    def reschedule_appointment(
        self,
        appointment_id: str,
        start: datetime,
        end: datetime,
        status: AppointmentStatus | str | None = None,
    ) -> BookingResult:
        """Move an appointment, optionally changing its status in the same write.

        Nothing is stored unless the new time (and status) passes the check.
        """
        start, end = self._validate_range(start, end)
        new_status = self._parse_status(status) if status is not None else None
        appt = self._require_appointment(appointment_id)

        with self._serialized(appt.business_id):
            target = new_status or appt.status
            if target in ACTIVE_STATUSES and not self.is_time_slot_available(
                appt.business_id,
                start,
                end,
                staff_id=appt.staff_id,
                exclude_appointment_id=appt.id,
            ):
                metrics.booking_conflicts += 1
                return BookingResult(
                    success=False,
                    error="The requested time slot is not available",
                    code="conflict",
                )
            changes = {"start_time": start, "end_time": end}
            if new_status is not None:
                changes["status"] = new_status
            updated = self._appointments.update(appointment_id, **changes)

        logger.info(
            "appointment_rescheduled",
            extra={"business_id": appt.business_id, "appointment_id": appointment_id},
        )
        return BookingResult(success=True, appointment=updated)

    def update_status(
        self, appointment_id: str, status: AppointmentStatus | str
    ) -> BookingResult:
        new_status = self._parse_status(status)
        appt = self._require_appointment(appointment_id)

        with self._serialized(appt.business_id):
            reactivating = new_status in ACTIVE_STATUSES and not appt.is_active
            if reactivating and not self.is_time_slot_available(
                appt.business_id,
                appt.start_time,
                appt.end_time,
                staff_id=appt.staff_id,
                exclude_appointment_id=appt.id,
            ):
                metrics.booking_conflicts += 1
                return BookingResult(
                    success=False,
                    error="The appointment time is no longer available",
                    code="conflict",
                )
            updated = self._appointments.update(appointment_id, status=new_status)

        return BookingResult(success=True, appointment=updated)
