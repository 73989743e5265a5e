from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ...errors import ProviderSyncError
from ...models import Appointment, CalendarIntegration, CalendarProvider


class CalendarAdapter(ABC):
    """Provider interface for pushing appointments into an external calendar.

    Implementations raise ``ProviderSyncError`` (or let transport errors
    escape) on failure; the orchestrator isolates failures per provider.
    """

    provider: CalendarProvider

    def __init__(self, integrations) -> None:
        self._integrations = integrations

    def _integration(self, business_id: str) -> Optional[CalendarIntegration]:
        return self._integrations.get(business_id, self.provider)

    def _require_token(self, business_id: str) -> CalendarIntegration:
        integration = self._integration(business_id)
        if integration is None or not integration.access_token:
            raise ProviderSyncError(self.provider.value, "not connected")
        return integration

    async def is_connected(self, business_id: str) -> bool:
        integration = self._integration(business_id)
        return integration is not None and bool(integration.access_token)

    @abstractmethod
    async def sync_appointment(
        self, business_id: str, appointment: Appointment
    ) -> Optional[str]:
        """Create or update the remote event and return its id."""

    @abstractmethod
    async def delete_appointment(self, business_id: str, event_id: str) -> bool:
        """Remove the remote event. An already-missing event counts as removed."""
