from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import anyio
import httpx
import pytest

from bizagent.config import OAuthSettings
from bizagent.errors import NotFoundError, ProviderSyncError, ValidationError
from bizagent.metrics import metrics
from bizagent.models import CalendarIntegration, CalendarProvider
from bizagent.repositories import (
    InMemoryAppointmentRepository,
    InMemoryCalendarIntegrationRepository,
)
from bizagent.services.calendar_sync import CalendarSyncOrchestrator
from bizagent.services.oauth_tokens import OAuthCredentialProvider, decode_state, encode_state
from bizagent.services.providers.base import CalendarAdapter


START = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)


class FakeAdapter(CalendarAdapter):
    def __init__(self, provider, integrations, *, fail=False, delay=0.0):
        super().__init__(integrations)
        self.provider = provider
        self.fail = fail
        self.delay = delay
        self.synced = []
        self.deleted = []

    async def sync_appointment(self, business_id, appointment):
        if self.delay:
            await anyio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.provider.value} is down")
        self.synced.append(appointment.id)
        return appointment.event_id_for(self.provider) or f"{self.provider.value}-evt"

    async def delete_appointment(self, business_id, event_id):
        if self.fail:
            raise ProviderSyncError(self.provider.value, "delete refused")
        self.deleted.append(event_id)
        return True


def _connect(integrations, *providers):
    for provider in providers:
        integrations.upsert(
            CalendarIntegration(business_id="biz", provider=provider, access_token="tok")
        )


def _setup(google=None, microsoft=None, apple=None, timeout=1.0, credentials=None):
    appointments = InMemoryAppointmentRepository()
    integrations = InMemoryCalendarIntegrationRepository()
    adapters = [
        FakeAdapter(CalendarProvider.GOOGLE, integrations, **(google or {})),
        FakeAdapter(CalendarProvider.MICROSOFT, integrations, **(microsoft or {})),
        FakeAdapter(CalendarProvider.APPLE, integrations, **(apple or {})),
    ]
    orchestrator = CalendarSyncOrchestrator(
        appointments,
        integrations,
        adapters,
        credentials=credentials,
        timeout_seconds=timeout,
    )
    appt = appointments.create(
        business_id="biz",
        customer_id="cust",
        start_time=START,
        end_time=START.replace(hour=11),
    )
    return orchestrator, appointments, integrations, adapters, appt


@pytest.mark.anyio
async def test_one_failing_provider_does_not_block_the_others():
    orchestrator, appointments, integrations, adapters, appt = _setup(
        microsoft={"fail": True}
    )
    _connect(integrations, *CalendarProvider)

    result = await orchestrator.sync_appointment(appt.id)

    assert result.results == {"google": True, "microsoft": False, "apple": True}
    assert result.synced is True
    stored = appointments.get(appt.id)
    assert stored.google_event_id == "google-evt"
    assert stored.microsoft_event_id is None
    assert stored.apple_event_id == "apple-evt"
    assert metrics.provider_sync["microsoft"].failures == 1
    assert metrics.provider_sync["google"].successes == 1


@pytest.mark.anyio
async def test_slow_provider_times_out_without_delaying_others():
    orchestrator, appointments, integrations, adapters, appt = _setup(
        google={"delay": 5.0}, timeout=0.05
    )
    _connect(integrations, CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT)

    with anyio.fail_after(2):
        result = await orchestrator.sync_appointment(appt.id)

    assert result.results == {"google": False, "microsoft": True}
    assert metrics.provider_sync["google"].timeouts == 1
    assert appointments.get(appt.id).microsoft_event_id == "microsoft-evt"


@pytest.mark.anyio
async def test_only_connected_providers_are_called():
    orchestrator, appointments, integrations, adapters, appt = _setup()
    _connect(integrations, CalendarProvider.GOOGLE)

    result = await orchestrator.sync_appointment(appt.id)

    assert result.to_dict() == {
        "google": True,
        "microsoft": False,
        "apple": False,
        "synced": True,
    }
    assert adapters[1].synced == []
    assert adapters[2].synced == []


@pytest.mark.anyio
async def test_repeated_sync_reuses_event_ids():
    orchestrator, appointments, integrations, adapters, appt = _setup()
    _connect(integrations, CalendarProvider.GOOGLE)

    await orchestrator.sync_appointment(appt.id)
    appointments.update(appt.id, google_event_id="google-fixed")
    await orchestrator.sync_appointment(appt.id)

    assert appointments.get(appt.id).google_event_id == "google-fixed"
    assert adapters[0].synced == [appt.id, appt.id]


class SlowInsertAdapter(FakeAdapter):
    """Creates a new remote event whenever the appointment has no id yet."""

    def __init__(self, integrations):
        super().__init__(CalendarProvider.GOOGLE, integrations)
        self.inserted = []

    async def sync_appointment(self, business_id, appointment):
        existing = appointment.event_id_for(self.provider)
        await anyio.sleep(0.1)
        if existing:
            return existing
        event_id = f"g{len(self.inserted) + 1}"
        self.inserted.append(event_id)
        return event_id


@pytest.mark.anyio
async def test_concurrent_syncs_of_one_appointment_insert_once():
    orchestrator, appointments, integrations, adapters, appt = _setup()
    slow = SlowInsertAdapter(integrations)
    orchestrator = CalendarSyncOrchestrator(
        appointments, integrations, [slow], timeout_seconds=1.0
    )
    _connect(integrations, CalendarProvider.GOOGLE)

    async with anyio.create_task_group() as tg:
        tg.start_soon(orchestrator.sync_appointment, appt.id)
        tg.start_soon(orchestrator.sync_appointment, appt.id)

    assert slow.inserted == ["g1"]
    assert appointments.get(appt.id).google_event_id == "g1"
    assert appt.id not in orchestrator._appointment_locks


@pytest.mark.anyio
async def test_delete_only_touches_providers_with_events():
    orchestrator, appointments, integrations, adapters, appt = _setup(
        microsoft={"fail": True}
    )
    _connect(integrations, *CalendarProvider)
    appointments.update(appt.id, google_event_id="g-1", microsoft_event_id="m-1")

    results = await orchestrator.delete_appointment(appt.id)

    assert results == {"google": True, "microsoft": False, "apple": False}
    assert adapters[0].deleted == ["g-1"]
    assert adapters[2].deleted == []
    stored = appointments.get(appt.id)
    assert stored.google_event_id is None
    assert stored.microsoft_event_id == "m-1"
    assert metrics.provider_sync["microsoft"].delete_failures == 1


@pytest.mark.anyio
async def test_unknown_appointment_and_missing_apple():
    orchestrator, *_ = _setup()
    with pytest.raises(NotFoundError):
        await orchestrator.sync_appointment("missing")
    # The fake Apple adapter does not publish a feed.
    with pytest.raises(NotFoundError):
        orchestrator.get_apple_subscription_url("biz")


@pytest.mark.anyio
async def test_integration_status_and_disconnect():
    orchestrator, appointments, integrations, adapters, appt = _setup()
    _connect(integrations, CalendarProvider.MICROSOFT)

    assert await orchestrator.get_integration_status("biz") == {
        "google": False,
        "microsoft": True,
        "apple": False,
    }
    assert orchestrator.disconnect("biz", CalendarProvider.MICROSOFT) is True
    assert orchestrator.disconnect("biz", CalendarProvider.MICROSOFT) is False
    assert (await orchestrator.get_integration_status("biz"))["microsoft"] is False


def test_state_round_trip_and_tampering():
    state = encode_state("biz-1", "google", "secret")
    assert decode_state(state, "google", "secret") == "biz-1"
    with pytest.raises(ValidationError):
        decode_state(state, "microsoft", "secret")
    with pytest.raises(ValidationError):
        decode_state(state, "google", "other-secret")
    with pytest.raises(ValidationError):
        decode_state("not-a-state", "google", "secret")


def _oauth_credentials(handler) -> OAuthCredentialProvider:
    return OAuthCredentialProvider(
        settings=OAuthSettings(
            state_secret="test-secret",
            google_client_id="gid",
            google_client_secret="gsecret",
        ),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.anyio
async def test_oauth_callback_stores_tokens_and_keeps_refresh_token():
    responses = iter(
        [
            {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600},
            {"access_token": "at-2", "expires_in": 3600},
        ]
    )
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json=next(responses))

    orchestrator, _, integrations, _, _ = _setup(credentials=_oauth_credentials(handler))
    urls = orchestrator.get_auth_urls("biz")
    assert set(urls) == {"google", "microsoft"}
    google_url = urlparse(urls["google"])
    assert google_url.netloc == "accounts.google.com"
    state = parse_qs(google_url.query)["state"][0]

    first = await orchestrator.handle_oauth_callback(CalendarProvider.GOOGLE, "code-1", state)
    assert first.business_id == "biz"
    assert posted[0]["code"] == ["code-1"]
    assert posted[0]["grant_type"] == ["authorization_code"]

    await orchestrator.handle_oauth_callback(CalendarProvider.GOOGLE, "code-2", state)
    stored = integrations.get("biz", CalendarProvider.GOOGLE)
    assert stored.access_token == "at-2"
    assert stored.refresh_token == "rt-1"


@pytest.mark.anyio
async def test_oauth_callback_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    orchestrator, _, integrations, _, _ = _setup(credentials=_oauth_credentials(handler))
    state = encode_state("biz", "google", "test-secret")

    with pytest.raises(ProviderSyncError):
        await orchestrator.handle_oauth_callback(CalendarProvider.GOOGLE, "bad", state)
    with pytest.raises(ValidationError):
        await orchestrator.handle_oauth_callback(CalendarProvider.GOOGLE, "", state)
    with pytest.raises(ValidationError):
        await orchestrator.handle_oauth_callback(CalendarProvider.APPLE, "code", state)
    # Microsoft is not configured in these settings.
    ms_state = encode_state("biz", "microsoft", "test-secret")
    with pytest.raises(ProviderSyncError):
        await orchestrator.handle_oauth_callback(CalendarProvider.MICROSOFT, "code", ms_state)
    assert integrations.get("biz", CalendarProvider.GOOGLE) is None
