from __future__ import annotations

import os
import tempfile

# Keep published feeds out of the working tree when bizagent.main is imported.
os.environ.setdefault("CALENDAR_FEED_DIR", tempfile.mkdtemp(prefix="bizagent-feeds-"))

from datetime import UTC, datetime, time

import pytest
from fastapi.testclient import TestClient

from bizagent.context import build_context
from bizagent.deps import get_service_context
from bizagent.metrics import metrics
from bizagent.models import BusinessHours
from bizagent.repositories import (
    DEFAULT_BUSINESS_ID,
    InMemoryAppointmentRepository,
    InMemoryBusinessHoursRepository,
    InMemoryBusinessRepository,
    InMemoryCalendarIntegrationRepository,
    InMemoryCallLogRepository,
    InMemoryReceptionistConfigRepository,
    InMemoryServiceRepository,
)
from bizagent.services.providers.apple import AppleCalendarAdapter
from bizagent.services.providers.google import GoogleCalendarAdapter
from bizagent.services.providers.microsoft import MicrosoftCalendarAdapter

# 2025-01-06 is a Monday.
MONDAY = datetime(2025, 1, 6, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_global_state():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(MONDAY.replace(hour=10))


@pytest.fixture
def ctx(tmp_path, clock):
    """A fully wired service context over fresh in-memory repositories."""
    integrations = InMemoryCalendarIntegrationRepository()
    return build_context(
        businesses=InMemoryBusinessRepository(),
        hours=InMemoryBusinessHoursRepository(),
        services=InMemoryServiceRepository(),
        appointments=InMemoryAppointmentRepository(),
        integrations=integrations,
        receptionist_configs=InMemoryReceptionistConfigRepository(),
        call_logs=InMemoryCallLogRepository(),
        adapters=[
            GoogleCalendarAdapter(integrations),
            MicrosoftCalendarAdapter(integrations),
            AppleCalendarAdapter(
                integrations,
                feed_dir=tmp_path / "calendar",
                public_base_path="/calendar",
            ),
        ],
        clock=clock,
    )


def set_weekday_hours(ctx, business_id: str = DEFAULT_BUSINESS_ID) -> None:
    """Open Monday to Friday 09:00-17:00, closed at the weekend."""
    rows = [
        BusinessHours(
            business_id=business_id,
            weekday=day,
            open_time=time(9, 0),
            close_time=time(17, 0),
        )
        for day in range(5)
    ]
    rows += [
        BusinessHours(business_id=business_id, weekday=day, is_closed=True)
        for day in (5, 6)
    ]
    ctx.hours.replace(business_id, rows)


@pytest.fixture
def open_weekdays(ctx):
    set_weekday_hours(ctx)
    return ctx


@pytest.fixture
def client(ctx):
    from bizagent.main import app

    app.dependency_overrides[get_service_context] = lambda: ctx
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
