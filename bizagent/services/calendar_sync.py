from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

import anyio

from ..config import get_settings
from ..errors import NotFoundError, ProviderSyncError, ValidationError
from ..metrics import metrics
from ..models import Appointment, CalendarIntegration, CalendarProvider
from .oauth_tokens import OAUTH_PROVIDERS, OAuthCredentialProvider
from .providers.apple import AppleCalendarAdapter
from .providers.base import CalendarAdapter

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    appointment_id: str
    results: Dict[str, bool] = field(default_factory=dict)

    @property
    def synced(self) -> bool:
        return any(self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {p.value: self.results.get(p.value, False) for p in CalendarProvider}
        payload["synced"] = self.synced
        return payload


class AppointmentLocks:
    """Keyed ``anyio.Lock`` per appointment, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[str, anyio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, appointment_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(appointment_id)
        if lock is None:
            lock = self._locks[appointment_id] = anyio.Lock()
        self._users[appointment_id] = self._users.get(appointment_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[appointment_id] -= 1
            if not self._users[appointment_id]:
                del self._users[appointment_id]
                del self._locks[appointment_id]

    def __contains__(self, appointment_id: str) -> bool:
        return appointment_id in self._locks


class CalendarSyncOrchestrator:
    """Fans appointment changes out to every connected calendar provider.

    Providers run concurrently, each under its own deadline. One provider
    failing or hanging never affects the others or the stored booking.
    Operations on one appointment are serialized so a second sync sees the
    event ids written back by the first instead of inserting again.
    """

    def __init__(
        self,
        appointments,
        integrations,
        adapters: Iterable[CalendarAdapter],
        credentials: OAuthCredentialProvider | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._appointments = appointments
        self._integrations = integrations
        self._adapters: Dict[CalendarProvider, CalendarAdapter] = {
            a.provider: a for a in adapters
        }
        self._credentials = credentials or OAuthCredentialProvider()
        self._timeout_seconds = timeout_seconds
        self._appointment_locks = AppointmentLocks()

    @property
    def timeout_seconds(self) -> float:
        if self._timeout_seconds is not None:
            return self._timeout_seconds
        return get_settings().calendar.provider_timeout_seconds

    def adapter(self, provider: CalendarProvider) -> CalendarAdapter:
        return self._adapters[provider]

    @property
    def apple(self) -> AppleCalendarAdapter:
        adapter = self._adapters.get(CalendarProvider.APPLE)
        if not isinstance(adapter, AppleCalendarAdapter):
            raise NotFoundError("Apple calendar feed is not configured")
        return adapter

    def _require_appointment(self, appointment_id: str) -> Appointment:
        appt = self._appointments.get(appointment_id)
        if appt is None:
            raise NotFoundError(f"Unknown appointment {appointment_id!r}")
        return appt

    async def _fan_out(
        self,
        action: str,
        business_id: str,
        appointment_id: str,
        calls: Dict[CalendarProvider, Callable[[], Awaitable[Any]]],
    ) -> Dict[CalendarProvider, Any]:
        """Run one call per provider concurrently; failed providers are omitted."""
        outcomes: Dict[CalendarProvider, Any] = {}
        timeout = self.timeout_seconds

        async def _run(provider: CalendarProvider, call) -> None:
            counters = metrics.for_provider(provider.value)
            log_extra = {
                "business_id": business_id,
                "appointment_id": appointment_id,
                "provider": provider.value,
                "action": action,
            }
            try:
                with anyio.fail_after(timeout):
                    outcomes[provider] = await call()
            except TimeoutError:
                counters.timeouts += 1
                counters.failures += 1
                logger.warning(
                    "calendar_provider_timeout",
                    extra={**log_extra, "timeout_seconds": timeout},
                )
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, ProviderSyncError)
                    else ProviderSyncError(provider.value, str(exc) or type(exc).__name__)
                )
                counters.failures += 1
                logger.warning(
                    "calendar_provider_sync_failed",
                    extra={**log_extra, "error": error.message},
                    exc_info=True,
                )

        async with anyio.create_task_group() as tg:
            for provider, call in calls.items():
                tg.start_soon(_run, provider, call)
        return outcomes

    async def connected_providers(self, business_id: str) -> List[CalendarProvider]:
        status = await self.get_integration_status(business_id)
        return [p for p in CalendarProvider if status.get(p.value)]

    async def sync_appointment(self, appointment_id: str) -> SyncResult:
        self._require_appointment(appointment_id)
        async with self._appointment_locks.hold(appointment_id):
            return await self._sync_locked(appointment_id)

    async def _sync_locked(self, appointment_id: str) -> SyncResult:
        # Re-read inside the lock: a sync that just finished may have stored ids.
        appt = self._require_appointment(appointment_id)
        business_id = appt.business_id
        providers = await self.connected_providers(business_id)

        calls = {}
        for provider in providers:
            adapter = self._adapters[provider]
            calls[provider] = (
                lambda adapter=adapter: adapter.sync_appointment(business_id, appt)
            )
            metrics.for_provider(provider.value).attempts += 1
        outcomes = await self._fan_out("sync", business_id, appointment_id, calls)

        result = SyncResult(appointment_id=appointment_id)
        updates: Dict[str, Any] = {}
        for provider in providers:
            event_id = outcomes.get(provider)
            result.results[provider.value] = bool(event_id)
            if event_id:
                metrics.for_provider(provider.value).successes += 1
                updates[provider.event_field] = event_id
        if updates:
            updates["last_synced_at"] = datetime.now(UTC)
            self._appointments.update(appointment_id, **updates)

        logger.info(
            "appointment_synced",
            extra={
                "business_id": business_id,
                "appointment_id": appointment_id,
                "results": result.results,
            },
        )
        return result

    async def delete_appointment(self, appointment_id: str) -> Dict[str, bool]:
        self._require_appointment(appointment_id)
        async with self._appointment_locks.hold(appointment_id):
            return await self._delete_locked(appointment_id)

    async def _delete_locked(self, appointment_id: str) -> Dict[str, bool]:
        appt = self._require_appointment(appointment_id)
        business_id = appt.business_id

        calls = {}
        for provider, adapter in self._adapters.items():
            event_id = appt.event_id_for(provider)
            if not event_id:
                continue
            calls[provider] = (
                lambda adapter=adapter, event_id=event_id: adapter.delete_appointment(
                    business_id, event_id
                )
            )
            metrics.for_provider(provider.value).deletes += 1
        outcomes = await self._fan_out("delete", business_id, appointment_id, calls)

        results = {p.value: False for p in CalendarProvider}
        cleared: Dict[str, Any] = {}
        for provider in calls:
            deleted = bool(outcomes.get(provider))
            results[provider.value] = deleted
            if deleted:
                cleared[provider.event_field] = None
            else:
                metrics.for_provider(provider.value).delete_failures += 1
        if cleared:
            self._appointments.update(appointment_id, **cleared)
        return results

    async def get_integration_status(self, business_id: str) -> Dict[str, bool]:
        status = {p.value: False for p in CalendarProvider}

        async def _check(provider: CalendarProvider, adapter: CalendarAdapter) -> None:
            status[provider.value] = await adapter.is_connected(business_id)

        async with anyio.create_task_group() as tg:
            for provider, adapter in self._adapters.items():
                tg.start_soon(_check, provider, adapter)
        return status

    def get_auth_urls(self, business_id: str) -> Dict[str, str]:
        return {
            provider.value: self._credentials.authorization_url(provider, business_id)
            for provider in (CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT)
        }

    async def handle_oauth_callback(
        self, provider: CalendarProvider, code: str, state: str
    ) -> CalendarIntegration:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"{provider.value} does not use OAuth")
        if not code:
            raise ValidationError("Missing authorization code")
        business_id = self._credentials.business_from_state(provider, state)
        tokens = await self._credentials.exchange_code(provider, code)

        existing = self._integrations.get(business_id, provider)
        integration = CalendarIntegration(
            business_id=business_id,
            provider=provider,
            access_token=tokens.access_token,
            # Providers omit the refresh token on re-consent; keep the old one.
            refresh_token=tokens.refresh_token
            or (existing.refresh_token if existing else None),
            expires_at=tokens.expires_at,
            data=dict(existing.data) if existing else {},
        )
        saved = self._integrations.upsert(integration)
        logger.info(
            "calendar_connected",
            extra={"business_id": business_id, "provider": provider.value},
        )
        return saved

    def disconnect(self, business_id: str, provider: CalendarProvider) -> bool:
        removed = self._integrations.delete(business_id, provider)
        feed = self._adapters.get(provider)
        if removed and isinstance(feed, AppleCalendarAdapter):
            # The feed is the only copy of Apple events; withdraw it with the integration.
            feed.purge(business_id)
            for appt in self._appointments.list_for_business(business_id):
                if appt.apple_event_id:
                    self._appointments.update(appt.id, apple_event_id=None)
        if removed:
            logger.info(
                "calendar_disconnected",
                extra={"business_id": business_id, "provider": provider.value},
            )
        return removed

    def get_apple_subscription_url(self, business_id: str) -> str:
        return self.apple.get_subscription_url(business_id)

    async def get_appointment_ics_url(self, appointment_id: str) -> str:
        """Write (or refresh) the appointment's Apple fragment and return its URL."""
        self._require_appointment(appointment_id)
        async with self._appointment_locks.hold(appointment_id):
            appt = self._require_appointment(appointment_id)
            event_id = await self.apple.sync_appointment(appt.business_id, appt)
            if event_id and event_id != appt.apple_event_id:
                self._appointments.update(appointment_id, apple_event_id=event_id)
        url: Optional[str] = self.apple.fragment_url(appt.business_id, appointment_id)
        if url is None:
            raise NotFoundError("ICS file not found")
        return url
