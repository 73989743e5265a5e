from __future__ import annotations

from datetime import UTC
import logging
from typing import Optional

import httpx

from ...config import get_settings
from ...errors import ProviderSyncError
from ...models import Appointment, CalendarProvider
from ..ics import event_summary
from .base import CalendarAdapter

logger = logging.getLogger(__name__)


def _graph_datetime(value) -> dict:
    return {
        "dateTime": value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S"),
        "timeZone": "UTC",
    }


class MicrosoftCalendarAdapter(CalendarAdapter):
    """Outlook / Microsoft 365 calendars through Microsoft Graph."""

    provider = CalendarProvider.MICROSOFT

    def __init__(
        self,
        integrations,
        graph_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 8.0,
    ) -> None:
        super().__init__(integrations)
        self._graph_base = graph_base
        self._transport = transport
        self._timeout = timeout

    @property
    def graph_base(self) -> str:
        return (self._graph_base or get_settings().calendar.microsoft_graph_base).rstrip("/")

    def _client(self, access_token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.graph_base,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    def _event_body(self, appointment: Appointment) -> dict:
        return {
            "subject": event_summary(appointment),
            "body": {"contentType": "text", "content": appointment.notes or ""},
            "start": _graph_datetime(appointment.start_time),
            "end": _graph_datetime(appointment.end_time),
        }

    def _failed(self, action: str, resp: httpx.Response) -> ProviderSyncError:
        return ProviderSyncError(
            self.provider.value, f"{action} failed ({resp.status_code})"
        )

    async def sync_appointment(
        self, business_id: str, appointment: Appointment
    ) -> Optional[str]:
        integration = self._require_token(business_id)
        body = self._event_body(appointment)
        async with self._client(integration.access_token) as client:
            if appointment.microsoft_event_id:
                resp = await client.patch(
                    f"/me/events/{appointment.microsoft_event_id}", json=body
                )
                if resp.status_code == 200:
                    return resp.json().get("id") or appointment.microsoft_event_id
                if resp.status_code != 404:
                    raise self._failed("event update", resp)
                logger.info(
                    "microsoft_event_missing_reinserting",
                    extra={
                        "appointment_id": appointment.id,
                        "event_id": appointment.microsoft_event_id,
                    },
                )
            resp = await client.post("/me/events", json=body)
            if resp.status_code not in (200, 201):
                raise self._failed("event create", resp)
            event_id = resp.json().get("id")
        if not event_id:
            raise ProviderSyncError(self.provider.value, "create returned no event id")
        return event_id

    async def delete_appointment(self, business_id: str, event_id: str) -> bool:
        integration = self._require_token(business_id)
        async with self._client(integration.access_token) as client:
            resp = await client.delete(f"/me/events/{event_id}")
        if resp.status_code in (200, 204, 404):
            return True
        raise self._failed("event delete", resp)
