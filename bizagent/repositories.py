from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime, time
from typing import Any, Dict, Iterator, List, Optional
import json

from .config import get_settings
from .db import SessionLocal
from .db_models import (
    AppointmentDB,
    BusinessDB,
    BusinessHoursDB,
    CalendarIntegrationDB,
    CallLogDB,
    ReceptionistConfigDB,
    ServiceDB,
)
from .models import (
    Appointment,
    AppointmentStatus,
    Business,
    BusinessHours,
    CalendarIntegration,
    CalendarProvider,
    CallLog,
    ReceptionistConfig,
    Service,
    new_appointment_id,
    new_call_log_id,
    new_service_id,
)

DEFAULT_BUSINESS_ID = "default_business"

# Fields that callers may change through ``update``.
_APPOINTMENT_MUTABLE_FIELDS = (
    "start_time",
    "end_time",
    "staff_id",
    "service_id",
    "status",
    "notes",
    "google_event_id",
    "microsoft_event_id",
    "apple_event_id",
    "last_synced_at",
)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def parse_hhmm(raw: str | None) -> time | None:
    if not raw:
        return None
    hour, minute = raw.split(":", 1)
    return time(int(hour), int(minute))


def format_hhmm(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


# ---------------------------------------------------------------------------
# In-memory repositories
# ---------------------------------------------------------------------------


class InMemoryBusinessRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Business] = {}
        self._ensure_default()

    def _ensure_default(self) -> None:
        self._by_id.setdefault(
            DEFAULT_BUSINESS_ID,
            Business(id=DEFAULT_BUSINESS_ID, name="Default Business"),
        )

    def get(self, business_id: str) -> Optional[Business]:
        return self._by_id.get(business_id)

    def upsert(
        self, business_id: str, name: str, timezone: str | None = None
    ) -> Business:
        existing = self._by_id.get(business_id)
        if existing:
            existing.name = name
            existing.timezone = timezone
            return existing
        business = Business(id=business_id, name=name, timezone=timezone)
        self._by_id[business_id] = business
        return business

    def list_all(self) -> List[Business]:
        return list(self._by_id.values())

    @contextmanager
    def lock(self, business_id: str) -> Iterator[None]:
        # Single process: the booking coordinator's keyed locks are enough.
        yield

    def clear(self) -> None:
        self._by_id.clear()
        self._ensure_default()


class InMemoryBusinessHoursRepository:
    def __init__(self) -> None:
        self._by_business: Dict[str, Dict[int, BusinessHours]] = {}

    def get_for_weekday(
        self, business_id: str, weekday: int
    ) -> Optional[BusinessHours]:
        return self._by_business.get(business_id, {}).get(weekday)

    def list_for_business(self, business_id: str) -> List[BusinessHours]:
        rows = self._by_business.get(business_id, {})
        return [rows[day] for day in sorted(rows)]

    def replace(self, business_id: str, hours: List[BusinessHours]) -> List[BusinessHours]:
        self._by_business[business_id] = {h.weekday: h for h in hours}
        return self.list_for_business(business_id)

    def clear(self) -> None:
        self._by_business.clear()


class InMemoryServiceRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Service] = {}
        self._by_business: Dict[str, List[str]] = {}

    def create(
        self,
        business_id: str,
        name: str,
        duration_minutes: int | None = None,
        active: bool = True,
    ) -> Service:
        service = Service(
            id=new_service_id(),
            business_id=business_id,
            name=name,
            duration_minutes=duration_minutes,
            active=active,
        )
        self._by_id[service.id] = service
        self._by_business.setdefault(business_id, []).append(service.id)
        return service

    def get(self, service_id: str) -> Optional[Service]:
        return self._by_id.get(service_id)

    def list_for_business(
        self, business_id: str, active_only: bool = False
    ) -> List[Service]:
        ids = self._by_business.get(business_id, [])
        services = [self._by_id[i] for i in ids]
        if active_only:
            services = [s for s in services if s.active]
        return services

    def clear(self) -> None:
        self._by_id.clear()
        self._by_business.clear()


class InMemoryAppointmentRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Appointment] = {}
        self._by_business: Dict[str, List[str]] = {}

    def create(
        self,
        business_id: str,
        customer_id: str,
        start_time: datetime,
        end_time: datetime,
        staff_id: str | None = None,
        service_id: str | None = None,
        notes: str | None = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    ) -> Appointment:
        appointment = Appointment(
            id=new_appointment_id(),
            business_id=business_id,
            customer_id=customer_id,
            start_time=start_time,
            end_time=end_time,
            staff_id=staff_id,
            service_id=service_id,
            status=status,
            notes=notes,
        )
        self._by_id[appointment.id] = appointment
        self._by_business.setdefault(business_id, []).append(appointment.id)
        return appointment

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._by_id.get(appointment_id)

    def list_for_business(
        self,
        business_id: str,
        *,
        active_only: bool = False,
        staff_id: str | None = None,
    ) -> List[Appointment]:
        ids = self._by_business.get(business_id, [])
        # A concurrent delete may drop a record after the index was read.
        appts = [a for a in (self._by_id.get(i) for i in list(ids)) if a is not None]
        if active_only:
            appts = [a for a in appts if a.is_active]
        if staff_id is not None:
            appts = [a for a in appts if a.staff_id == staff_id]
        return appts

    def update(self, appointment_id: str, **fields: Any) -> Optional[Appointment]:
        appt = self._by_id.get(appointment_id)
        if not appt:
            return None
        for key, value in fields.items():
            if key not in _APPOINTMENT_MUTABLE_FIELDS:
                raise KeyError(key)
            setattr(appt, key, value)
        return appt

    def delete(self, appointment_id: str) -> bool:
        appt = self._by_id.pop(appointment_id, None)
        if not appt:
            return False
        ids = self._by_business.get(appt.business_id, [])
        self._by_business[appt.business_id] = [i for i in ids if i != appointment_id]
        return True

    def clear(self) -> None:
        self._by_id.clear()
        self._by_business.clear()


class InMemoryCalendarIntegrationRepository:
    def __init__(self) -> None:
        self._by_key: Dict[tuple[str, CalendarProvider], CalendarIntegration] = {}

    def get(
        self, business_id: str, provider: CalendarProvider
    ) -> Optional[CalendarIntegration]:
        return self._by_key.get((business_id, provider))

    def upsert(self, integration: CalendarIntegration) -> CalendarIntegration:
        key = (integration.business_id, integration.provider)
        existing = self._by_key.get(key)
        if existing:
            integration.created_at = existing.created_at
        integration.updated_at = datetime.now(UTC)
        self._by_key[key] = integration
        return integration

    def delete(self, business_id: str, provider: CalendarProvider) -> bool:
        return self._by_key.pop((business_id, provider), None) is not None

    def list_for_business(self, business_id: str) -> List[CalendarIntegration]:
        return [i for (b, _), i in self._by_key.items() if b == business_id]

    def clear(self) -> None:
        self._by_key.clear()


class InMemoryReceptionistConfigRepository:
    def __init__(self) -> None:
        self._by_business: Dict[str, ReceptionistConfig] = {}

    def get(self, business_id: str) -> Optional[ReceptionistConfig]:
        return self._by_business.get(business_id)

    def upsert(self, config: ReceptionistConfig) -> ReceptionistConfig:
        self._by_business[config.business_id] = config
        return config

    def clear(self) -> None:
        self._by_business.clear()


class InMemoryCallLogRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, CallLog] = {}
        self._by_business: Dict[str, List[str]] = {}

    def create(
        self,
        business_id: str,
        caller_id: str,
        transcript: str,
        intent_detected: str,
        is_emergency: bool = False,
        caller_name: str | None = None,
        status: str = "answered",
    ) -> CallLog:
        log = CallLog(
            id=new_call_log_id(),
            business_id=business_id,
            caller_id=caller_id,
            transcript=transcript,
            intent_detected=intent_detected,
            is_emergency=is_emergency,
            caller_name=caller_name,
            status=status,
        )
        self._by_id[log.id] = log
        self._by_business.setdefault(business_id, []).append(log.id)
        return log

    def list_for_business(self, business_id: str) -> List[CallLog]:
        ids = self._by_business.get(business_id, [])
        return [self._by_id[i] for i in ids]

    def clear(self) -> None:
        self._by_id.clear()
        self._by_business.clear()


# ---------------------------------------------------------------------------
# SQLAlchemy repositories
# ---------------------------------------------------------------------------


class DbBusinessRepository:
    """Business repository backed by the SQLAlchemy database."""

    def _to_model(self, row: BusinessDB) -> Business:
        return Business(
            id=row.id,
            name=row.name,
            timezone=row.timezone,
            created_at=row.created_at,
        )

    def get(self, business_id: str) -> Optional[Business]:
        session = SessionLocal()
        try:
            row = session.get(BusinessDB, business_id)
            return self._to_model(row) if row else None
        finally:
            session.close()

    def upsert(
        self, business_id: str, name: str, timezone: str | None = None
    ) -> Business:
        session = SessionLocal()
        try:
            row = session.get(BusinessDB, business_id)
            if row is None:
                row = BusinessDB(id=business_id, name=name, timezone=timezone)
            else:
                row.name = name
                row.timezone = timezone
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def list_all(self) -> List[Business]:
        session = SessionLocal()
        try:
            return [self._to_model(r) for r in session.query(BusinessDB).all()]
        finally:
            session.close()

    @contextmanager
    def lock(self, business_id: str) -> Iterator[None]:
        """Hold a row lock on the business for the duration of the block.

        Check and insert run in their own sessions; this guard session keeps
        ``SELECT ... FOR UPDATE`` open so other workers booking for the same
        business wait until the block exits. SQLite ignores the lock clause.
        """
        session = SessionLocal()
        try:
            session.query(BusinessDB).filter(
                BusinessDB.id == business_id
            ).with_for_update().first()
            yield
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()


class DbBusinessHoursRepository:
    def _to_model(self, row: BusinessHoursDB) -> BusinessHours:
        return BusinessHours(
            business_id=row.business_id,
            weekday=row.weekday,
            open_time=parse_hhmm(row.open_time),
            close_time=parse_hhmm(row.close_time),
            is_closed=bool(row.is_closed),
        )

    def get_for_weekday(
        self, business_id: str, weekday: int
    ) -> Optional[BusinessHours]:
        session = SessionLocal()
        try:
            row = (
                session.query(BusinessHoursDB)
                .filter(
                    BusinessHoursDB.business_id == business_id,
                    BusinessHoursDB.weekday == weekday,
                )
                .first()
            )
            return self._to_model(row) if row else None
        finally:
            session.close()

    def list_for_business(self, business_id: str) -> List[BusinessHours]:
        session = SessionLocal()
        try:
            rows = (
                session.query(BusinessHoursDB)
                .filter(BusinessHoursDB.business_id == business_id)
                .order_by(BusinessHoursDB.weekday)
                .all()
            )
            return [self._to_model(r) for r in rows]
        finally:
            session.close()

    def replace(self, business_id: str, hours: List[BusinessHours]) -> List[BusinessHours]:
        session = SessionLocal()
        try:
            session.query(BusinessHoursDB).filter(
                BusinessHoursDB.business_id == business_id
            ).delete()
            for h in hours:
                session.add(
                    BusinessHoursDB(
                        business_id=business_id,
                        weekday=h.weekday,
                        open_time=format_hhmm(h.open_time),
                        close_time=format_hhmm(h.close_time),
                        is_closed=h.is_closed,
                    )
                )
            session.commit()
        finally:
            session.close()
        return self.list_for_business(business_id)


class DbServiceRepository:
    def _to_model(self, row: ServiceDB) -> Service:
        return Service(
            id=row.id,
            business_id=row.business_id,
            name=row.name,
            duration_minutes=row.duration_minutes,
            active=bool(row.active),
        )

    def create(
        self,
        business_id: str,
        name: str,
        duration_minutes: int | None = None,
        active: bool = True,
    ) -> Service:
        session = SessionLocal()
        try:
            row = ServiceDB(
                id=new_service_id(),
                business_id=business_id,
                name=name,
                duration_minutes=duration_minutes,
                active=active,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def get(self, service_id: str) -> Optional[Service]:
        session = SessionLocal()
        try:
            row = session.get(ServiceDB, service_id)
            return self._to_model(row) if row else None
        finally:
            session.close()

    def list_for_business(
        self, business_id: str, active_only: bool = False
    ) -> List[Service]:
        session = SessionLocal()
        try:
            query = session.query(ServiceDB).filter(
                ServiceDB.business_id == business_id
            )
            if active_only:
                query = query.filter(ServiceDB.active.is_(True))
            return [self._to_model(r) for r in query.all()]
        finally:
            session.close()


class DbAppointmentRepository:
    """Appointment repository backed by the SQLAlchemy database."""

    def _to_model(self, row: AppointmentDB) -> Appointment:
        return Appointment(
            id=row.id,
            business_id=row.business_id,
            customer_id=row.customer_id,
            start_time=_as_utc(row.start_time),
            end_time=_as_utc(row.end_time),
            staff_id=row.staff_id,
            service_id=row.service_id,
            status=AppointmentStatus(row.status),
            notes=row.notes,
            google_event_id=row.google_event_id,
            microsoft_event_id=row.microsoft_event_id,
            apple_event_id=row.apple_event_id,
            last_synced_at=_as_utc(row.last_synced_at),
            created_at=row.created_at,
        )

    def create(
        self,
        business_id: str,
        customer_id: str,
        start_time: datetime,
        end_time: datetime,
        staff_id: str | None = None,
        service_id: str | None = None,
        notes: str | None = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    ) -> Appointment:
        session = SessionLocal()
        try:
            row = AppointmentDB(
                id=new_appointment_id(),
                business_id=business_id,
                customer_id=customer_id,
                start_time=start_time,
                end_time=end_time,
                staff_id=staff_id,
                service_id=service_id,
                status=status.value,
                notes=notes,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def get(self, appointment_id: str) -> Optional[Appointment]:
        session = SessionLocal()
        try:
            row = session.get(AppointmentDB, appointment_id)
            return self._to_model(row) if row else None
        finally:
            session.close()

    def list_for_business(
        self,
        business_id: str,
        *,
        active_only: bool = False,
        staff_id: str | None = None,
    ) -> List[Appointment]:
        session = SessionLocal()
        try:
            query = session.query(AppointmentDB).filter(
                AppointmentDB.business_id == business_id
            )
            if active_only:
                query = query.filter(
                    AppointmentDB.status.in_(
                        [
                            AppointmentStatus.SCHEDULED.value,
                            AppointmentStatus.CONFIRMED.value,
                        ]
                    )
                )
            if staff_id is not None:
                query = query.filter(AppointmentDB.staff_id == staff_id)
            return [self._to_model(r) for r in query.all()]
        finally:
            session.close()

    def update(self, appointment_id: str, **fields: Any) -> Optional[Appointment]:
        session = SessionLocal()
        try:
            row = session.get(AppointmentDB, appointment_id)
            if not row:
                return None
            for key, value in fields.items():
                if key not in _APPOINTMENT_MUTABLE_FIELDS:
                    raise KeyError(key)
                if key == "status":
                    value = AppointmentStatus(value).value
                setattr(row, key, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def delete(self, appointment_id: str) -> bool:
        session = SessionLocal()
        try:
            deleted = (
                session.query(AppointmentDB)
                .filter(AppointmentDB.id == appointment_id)
                .delete()
            )
            session.commit()
            return bool(deleted)
        finally:
            session.close()


class DbCalendarIntegrationRepository:
    def _to_model(self, row: CalendarIntegrationDB) -> CalendarIntegration:
        return CalendarIntegration(
            business_id=row.business_id,
            provider=CalendarProvider(row.provider),
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=_as_utc(row.expires_at),
            data=_load_json(row.data, {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _query(self, session, business_id: str, provider: CalendarProvider):
        return session.query(CalendarIntegrationDB).filter(
            CalendarIntegrationDB.business_id == business_id,
            CalendarIntegrationDB.provider == provider.value,
        )

    def get(
        self, business_id: str, provider: CalendarProvider
    ) -> Optional[CalendarIntegration]:
        session = SessionLocal()
        try:
            row = self._query(session, business_id, provider).first()
            return self._to_model(row) if row else None
        finally:
            session.close()

    def upsert(self, integration: CalendarIntegration) -> CalendarIntegration:
        session = SessionLocal()
        try:
            row = self._query(
                session, integration.business_id, integration.provider
            ).first()
            if row is None:
                row = CalendarIntegrationDB(
                    business_id=integration.business_id,
                    provider=integration.provider.value,
                )
            row.access_token = integration.access_token
            row.refresh_token = integration.refresh_token
            row.expires_at = integration.expires_at
            row.data = json.dumps(integration.data or {})
            row.updated_at = datetime.now(UTC)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def delete(self, business_id: str, provider: CalendarProvider) -> bool:
        session = SessionLocal()
        try:
            deleted = self._query(session, business_id, provider).delete()
            session.commit()
            return bool(deleted)
        finally:
            session.close()

    def list_for_business(self, business_id: str) -> List[CalendarIntegration]:
        session = SessionLocal()
        try:
            rows = (
                session.query(CalendarIntegrationDB)
                .filter(CalendarIntegrationDB.business_id == business_id)
                .all()
            )
            return [self._to_model(r) for r in rows]
        finally:
            session.close()


class DbReceptionistConfigRepository:
    def _to_model(self, row: ReceptionistConfigDB) -> ReceptionistConfig:
        return ReceptionistConfig(
            business_id=row.business_id,
            greeting=row.greeting,
            after_hours_message=row.after_hours_message,
            emergency_keywords=_load_json(row.emergency_keywords, []),
            voicemail_enabled=bool(row.voicemail_enabled),
            transfer_phone_numbers=_load_json(row.transfer_phone_numbers, []),
        )

    def get(self, business_id: str) -> Optional[ReceptionistConfig]:
        session = SessionLocal()
        try:
            row = session.get(ReceptionistConfigDB, business_id)
            return self._to_model(row) if row else None
        finally:
            session.close()

    def upsert(self, config: ReceptionistConfig) -> ReceptionistConfig:
        session = SessionLocal()
        try:
            row = session.get(ReceptionistConfigDB, config.business_id)
            if row is None:
                row = ReceptionistConfigDB(business_id=config.business_id)
            row.greeting = config.greeting
            row.after_hours_message = config.after_hours_message
            row.emergency_keywords = json.dumps(list(config.emergency_keywords))
            row.voicemail_enabled = config.voicemail_enabled
            row.transfer_phone_numbers = json.dumps(
                list(config.transfer_phone_numbers)
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()


class DbCallLogRepository:
    def _to_model(self, row: CallLogDB) -> CallLog:
        return CallLog(
            id=row.id,
            business_id=row.business_id,
            caller_id=row.caller_id or "",
            transcript=row.transcript or "",
            intent_detected=row.intent_detected or "general",
            is_emergency=bool(row.is_emergency),
            caller_name=row.caller_name,
            status=row.status,
            call_time=_as_utc(row.call_time),
        )

    def create(
        self,
        business_id: str,
        caller_id: str,
        transcript: str,
        intent_detected: str,
        is_emergency: bool = False,
        caller_name: str | None = None,
        status: str = "answered",
    ) -> CallLog:
        session = SessionLocal()
        try:
            row = CallLogDB(
                id=new_call_log_id(),
                business_id=business_id,
                caller_id=caller_id,
                transcript=transcript,
                intent_detected=intent_detected,
                is_emergency=is_emergency,
                caller_name=caller_name,
                status=status,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        finally:
            session.close()

    def list_for_business(self, business_id: str) -> List[CallLog]:
        session = SessionLocal()
        try:
            rows = (
                session.query(CallLogDB)
                .filter(CallLogDB.business_id == business_id)
                .order_by(CallLogDB.call_time)
                .all()
            )
            return [self._to_model(r) for r in rows]
        finally:
            session.close()


USE_DB = get_settings().storage_backend == "db"

if USE_DB:
    businesses_repo = DbBusinessRepository()
    hours_repo = DbBusinessHoursRepository()
    services_repo = DbServiceRepository()
    appointments_repo = DbAppointmentRepository()
    integrations_repo = DbCalendarIntegrationRepository()
    receptionist_config_repo = DbReceptionistConfigRepository()
    call_logs_repo = DbCallLogRepository()
else:
    businesses_repo = InMemoryBusinessRepository()
    hours_repo = InMemoryBusinessHoursRepository()
    services_repo = InMemoryServiceRepository()
    appointments_repo = InMemoryAppointmentRepository()
    integrations_repo = InMemoryCalendarIntegrationRepository()
    receptionist_config_repo = InMemoryReceptionistConfigRepository()
    call_logs_repo = InMemoryCallLogRepository()
