from datetime import UTC, datetime, timedelta
import threading

import pytest

from bizagent.errors import NotFoundError, ValidationError
from bizagent.metrics import metrics
from bizagent.models import AppointmentStatus
from bizagent.repositories import DEFAULT_BUSINESS_ID, InMemoryAppointmentRepository
from bizagent.services.booking import BookingRequest, ensure_utc


MONDAY = datetime(2025, 1, 6, tzinfo=UTC)


def _at(hour: int, minute: int = 0) -> datetime:
    return MONDAY.replace(hour=hour, minute=minute)


def _request(start, end, **kwargs) -> BookingRequest:
    return BookingRequest(
        business_id=kwargs.pop("business_id", DEFAULT_BUSINESS_ID),
        customer_id=kwargs.pop("customer_id", "cust-1"),
        start_time=start,
        end_time=end,
        **kwargs,
    )


def test_boundary_touch_is_not_a_conflict(open_weekdays):
    booking = open_weekdays.booking
    first = booking.create_appointment_safely(_request(_at(10), _at(11)))
    assert first.success

    overlapping = booking.create_appointment_safely(_request(_at(10, 30), _at(11, 30)))
    assert overlapping.success is False
    assert overlapping.code == "conflict"

    touching = booking.create_appointment_safely(_request(_at(11), _at(12)))
    assert touching.success
    assert touching.appointment.start_time == _at(11)


def test_rejected_booking_writes_nothing(ctx):
    ctx.booking.create_appointment_safely(_request(_at(10), _at(11)))
    result = ctx.booking.create_appointment_safely(_request(_at(9, 30), _at(10, 30)))

    assert result.success is False
    assert result.appointment is None
    assert len(ctx.appointments.list_for_business(DEFAULT_BUSINESS_ID)) == 1
    assert metrics.booking_conflicts == 1
    assert metrics.appointments_scheduled == 1


def test_invalid_ranges_are_validation_errors(ctx):
    with pytest.raises(ValidationError):
        ctx.booking.create_appointment_safely(_request(_at(11), _at(10)))
    with pytest.raises(ValidationError):
        ctx.booking.create_appointment_safely(_request(_at(11), _at(11)))
    with pytest.raises(ValidationError):
        ctx.booking.create_appointment_safely(_request(_at(9), _at(10), customer_id=""))
    assert ctx.appointments.list_for_business(DEFAULT_BUSINESS_ID) == []
    assert metrics.booking_validation_errors == 3


def test_unknown_business_and_service(ctx):
    with pytest.raises(NotFoundError):
        ctx.booking.create_appointment_safely(
            _request(_at(9), _at(10), business_id="missing")
        )
    with pytest.raises(ValidationError):
        ctx.booking.create_appointment_safely(
            _request(_at(9), _at(10), service_id="no-such-service")
        )


def test_staff_scoped_checks_ignore_other_staff(ctx):
    assert ctx.booking.create_appointment_safely(
        _request(_at(9), _at(10), staff_id="alice")
    ).success
    assert ctx.booking.create_appointment_safely(
        _request(_at(9), _at(10), staff_id="bob")
    ).success
    assert ctx.booking.create_appointment_safely(
        _request(_at(9, 30), _at(10, 30), staff_id="alice")
    ).success is False
    # Without a staff member every active booking counts.
    assert not ctx.booking.is_time_slot_available(DEFAULT_BUSINESS_ID, _at(9), _at(10))


def test_naive_datetimes_are_treated_as_utc(ctx):
    naive = datetime(2025, 1, 6, 10, 0)
    result = ctx.booking.create_appointment_safely(
        _request(naive, naive + timedelta(hours=1))
    )
    assert result.appointment.start_time == _at(10)
    assert ensure_utc(naive).tzinfo is UTC


def test_concurrent_requests_for_same_slot_book_once(ctx):
    attempts = 8
    barrier = threading.Barrier(attempts)
    outcomes = []
    outcomes_lock = threading.Lock()

    def _book(i: int) -> None:
        barrier.wait()
        result = ctx.booking.create_appointment_safely(
            _request(_at(14), _at(15), customer_id=f"cust-{i}")
        )
        with outcomes_lock:
            outcomes.append(result.success)

    threads = [threading.Thread(target=_book, args=(i,)) for i in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == attempts - 1
    assert len(ctx.appointments.list_for_business(DEFAULT_BUSINESS_ID)) == 1


def test_cancelled_appointment_frees_slot_and_blocks_reactivation(ctx):
    first = ctx.booking.create_appointment_safely(_request(_at(10), _at(11))).appointment
    cancelled = ctx.booking.update_status(first.id, "cancelled")
    assert cancelled.appointment.status is AppointmentStatus.CANCELLED

    second = ctx.booking.create_appointment_safely(_request(_at(10), _at(11)))
    assert second.success

    reactivated = ctx.booking.update_status(first.id, AppointmentStatus.SCHEDULED)
    assert reactivated.success is False
    assert ctx.appointments.get(first.id).status is AppointmentStatus.CANCELLED

    with pytest.raises(ValidationError):
        ctx.booking.update_status(first.id, "postponed")


def test_reschedule_ignores_its_own_slot(ctx):
    appt = ctx.booking.create_appointment_safely(_request(_at(10), _at(11))).appointment
    ctx.booking.create_appointment_safely(_request(_at(12), _at(13)))

    moved = ctx.booking.reschedule_appointment(appt.id, _at(10, 30), _at(11, 30))
    assert moved.success
    assert ctx.appointments.get(appt.id).start_time == _at(10, 30)

    blocked = ctx.booking.reschedule_appointment(appt.id, _at(12, 30), _at(13, 30))
    assert blocked.success is False
    assert ctx.appointments.get(appt.id).start_time == _at(10, 30)

    with pytest.raises(NotFoundError):
        ctx.booking.reschedule_appointment("missing", _at(9), _at(10))


def test_reschedule_with_reactivation_is_all_or_nothing(ctx):
    appt = ctx.booking.create_appointment_safely(_request(_at(10), _at(11))).appointment
    ctx.booking.update_status(appt.id, "cancelled")
    ctx.booking.create_appointment_safely(_request(_at(14), _at(15)))

    blocked = ctx.booking.reschedule_appointment(
        appt.id, _at(14), _at(15), status=AppointmentStatus.SCHEDULED
    )
    assert blocked.code == "conflict"
    stored = ctx.appointments.get(appt.id)
    assert (stored.start_time, stored.status) == (_at(10), AppointmentStatus.CANCELLED)

    # A cancelled appointment can move anywhere while it stays cancelled.
    assert ctx.booking.reschedule_appointment(appt.id, _at(14, 30), _at(15, 30)).success

    moved = ctx.booking.reschedule_appointment(appt.id, _at(16), _at(17), status="confirmed")
    assert moved.success
    assert moved.appointment.status is AppointmentStatus.CONFIRMED
    assert moved.appointment.start_time == _at(16)

    with pytest.raises(ValidationError):
        ctx.booking.reschedule_appointment(appt.id, _at(9), _at(10), status="postponed")
    assert ctx.appointments.get(appt.id).start_time == _at(16)


def test_listing_skips_records_deleted_after_the_index_was_read():
    repo = InMemoryAppointmentRepository()
    keep = repo.create("biz", "c1", _at(9), _at(10))
    gone = repo.create("biz", "c2", _at(11), _at(12))
    index = list(repo._by_business["biz"])

    repo.delete(gone.id)
    # Simulate a reader that captured the index before the delete landed.
    repo._by_business["biz"] = index

    assert [a.id for a in repo.list_for_business("biz", active_only=True)] == [keep.id]
