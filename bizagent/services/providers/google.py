from __future__ import annotations

from datetime import UTC
import logging
from typing import Any, Callable, Optional

import anyio
from google.oauth2.credentials import Credentials as UserCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ...config import get_settings
from ...errors import ProviderSyncError
from ...models import Appointment, CalendarIntegration, CalendarProvider
from ..ics import event_summary
from .base import CalendarAdapter

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105 - OAuth endpoint

# Remote event already gone.
_GONE_STATUSES = {404, 410}


def _http_status(exc: HttpError) -> int | None:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def build_google_client(integration: CalendarIntegration) -> Any:
    """Build a Calendar v3 client from the tenant's stored OAuth tokens."""
    oauth = get_settings().oauth
    creds = UserCredentials(
        token=integration.access_token,
        refresh_token=integration.refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=oauth.google_client_id,
        client_secret=oauth.google_client_secret,
    )
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


class GoogleCalendarAdapter(CalendarAdapter):
    provider = CalendarProvider.GOOGLE

    def __init__(
        self,
        integrations,
        calendar_id: str | None = None,
        client_factory: Callable[[CalendarIntegration], Any] | None = None,
    ) -> None:
        super().__init__(integrations)
        self._calendar_id = calendar_id
        self._client_factory = client_factory or build_google_client

    @property
    def calendar_id(self) -> str:
        return self._calendar_id or get_settings().calendar.google_calendar_id

    def _event_body(self, appointment: Appointment) -> dict:
        return {
            "summary": event_summary(appointment),
            "description": appointment.notes or "",
            "start": {
                "dateTime": appointment.start_time.astimezone(UTC).isoformat(),
                "timeZone": "UTC",
            },
            "end": {
                "dateTime": appointment.end_time.astimezone(UTC).isoformat(),
                "timeZone": "UTC",
            },
        }

    def _upsert_event(self, client: Any, appointment: Appointment) -> str:
        body = self._event_body(appointment)
        if appointment.google_event_id:
            try:
                updated = (
                    client.events()
                    .patch(
                        calendarId=self.calendar_id,
                        eventId=appointment.google_event_id,
                        body=body,
                    )
                    .execute()
                )
                return updated.get("id") or appointment.google_event_id
            except HttpError as exc:
                if _http_status(exc) not in _GONE_STATUSES:
                    raise ProviderSyncError(
                        self.provider.value, f"event update failed ({_http_status(exc)})"
                    ) from exc
                logger.info(
                    "google_event_missing_reinserting",
                    extra={
                        "appointment_id": appointment.id,
                        "event_id": appointment.google_event_id,
                    },
                )
        try:
            created = (
                client.events().insert(calendarId=self.calendar_id, body=body).execute()
            )
        except HttpError as exc:
            raise ProviderSyncError(
                self.provider.value, f"event insert failed ({_http_status(exc)})"
            ) from exc
        event_id = created.get("id")
        if not event_id:
            raise ProviderSyncError(self.provider.value, "insert returned no event id")
        return event_id

    def _delete_event(self, client: Any, event_id: str) -> bool:
        try:
            client.events().delete(calendarId=self.calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            if _http_status(exc) in _GONE_STATUSES:
                return True
            raise ProviderSyncError(
                self.provider.value, f"event delete failed ({_http_status(exc)})"
            ) from exc
        return True

    async def sync_appointment(
        self, business_id: str, appointment: Appointment
    ) -> Optional[str]:
        integration = self._require_token(business_id)
        client = self._client_factory(integration)
        # The discovery client is blocking; keep it off the event loop and let
        # a deadline abandon the worker thread.
        return await anyio.to_thread.run_sync(
            self._upsert_event, client, appointment, abandon_on_cancel=True
        )

    async def delete_appointment(self, business_id: str, event_id: str) -> bool:
        integration = self._require_token(business_id)
        client = self._client_factory(integration)
        return await anyio.to_thread.run_sync(
            self._delete_event, client, event_id, abandon_on_cancel=True
        )
