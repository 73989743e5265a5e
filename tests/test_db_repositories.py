from datetime import UTC, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bizagent import repositories
from bizagent.db import Base
from bizagent.models import (
    AppointmentStatus,
    BusinessHours,
    CalendarIntegration,
    CalendarProvider,
    ReceptionistConfig,
)
from bizagent.services.booking import BookingCoordinator, BookingRequest

import bizagent.db_models  # noqa: F401  registers tables on Base


START = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)


@pytest.fixture
def db_session_factory(tmp_path, monkeypatch):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(repositories, "SessionLocal", factory)
    yield factory
    engine.dispose()


def test_business_and_hours_round_trip(db_session_factory):
    businesses = repositories.DbBusinessRepository()
    hours = repositories.DbBusinessHoursRepository()

    businesses.upsert("biz", "Acme Plumbing", timezone="Europe/London")
    assert businesses.get("biz").timezone == "Europe/London"
    assert businesses.get("missing") is None

    hours.replace(
        "biz",
        [
            BusinessHours(business_id="biz", weekday=0, open_time=time(9), close_time=time(17)),
            BusinessHours(business_id="biz", weekday=6, is_closed=True),
        ],
    )
    monday = hours.get_for_weekday("biz", 0)
    assert (monday.open_time, monday.close_time) == (time(9), time(17))
    assert hours.get_for_weekday("biz", 6).is_open_day is False
    assert [h.weekday for h in hours.list_for_business("biz")] == [0, 6]

    hours.replace("biz", [])
    assert hours.list_for_business("biz") == []


def test_appointments_keep_utc_and_filter_active(db_session_factory):
    appointments = repositories.DbAppointmentRepository()
    appt = appointments.create(
        business_id="biz",
        customer_id="cust",
        start_time=START,
        end_time=START.replace(hour=11),
        staff_id="alice",
    )
    fetched = appointments.get(appt.id)
    assert fetched.start_time == START
    assert fetched.start_time.tzinfo is not None

    appointments.update(appt.id, status=AppointmentStatus.CANCELLED, google_event_id="g-1")
    assert appointments.list_for_business("biz", active_only=True) == []
    assert appointments.get(appt.id).google_event_id == "g-1"

    with pytest.raises(KeyError):
        appointments.update(appt.id, business_id="other")

    assert appointments.delete(appt.id) is True
    assert appointments.delete(appt.id) is False


def test_booking_coordinator_on_database(db_session_factory):
    businesses = repositories.DbBusinessRepository()
    businesses.upsert("biz", "Acme Plumbing")
    coordinator = BookingCoordinator(
        businesses,
        repositories.DbAppointmentRepository(),
        repositories.DbServiceRepository(),
    )

    def _book(hour: int):
        return coordinator.create_appointment_safely(
            BookingRequest(
                business_id="biz",
                customer_id="cust",
                start_time=START.replace(hour=hour),
                end_time=START.replace(hour=hour + 1),
            )
        )

    assert _book(10).success
    assert _book(10).success is False
    assert _book(11).success


def test_integration_data_survives_round_trip(db_session_factory):
    integrations = repositories.DbCalendarIntegrationRepository()
    integrations.upsert(
        CalendarIntegration(
            business_id="biz",
            provider=CalendarProvider.APPLE,
            data={"events": {"a1": {"filename": "f.ics", "eventId": "e1"}}},
        )
    )
    stored = integrations.get("biz", CalendarProvider.APPLE)
    assert stored.data["events"]["a1"]["eventId"] == "e1"
    assert integrations.get("biz", CalendarProvider.GOOGLE) is None
    assert integrations.delete("biz", CalendarProvider.APPLE) is True
    assert integrations.list_for_business("biz") == []


def test_receptionist_config_and_call_logs(db_session_factory):
    configs = repositories.DbReceptionistConfigRepository()
    configs.upsert(
        ReceptionistConfig(
            business_id="biz",
            greeting="Hi",
            emergency_keywords=["sewage"],
            transfer_phone_numbers=["+15550000000"],
        )
    )
    assert configs.get("biz").emergency_keywords == ["sewage"]

    logs = repositories.DbCallLogRepository()
    logs.create(
        business_id="biz",
        caller_id="+1555",
        transcript="book me in",
        intent_detected="appointment",
    )
    [log] = logs.list_for_business("biz")
    assert log.intent_detected == "appointment"
    assert log.call_time.tzinfo is not None
