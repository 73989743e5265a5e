from __future__ import annotations

import logging
import secrets
import threading
from pathlib import Path
from typing import Optional

from ...config import get_settings
from ...models import Appointment, CalendarIntegration, CalendarProvider
from .. import ics
from .base import CalendarAdapter

logger = logging.getLogger(__name__)


class AppleCalendarAdapter(CalendarAdapter):
    """Apple Calendar through a published iCalendar subscription feed.

    There is no remote API: each appointment becomes a fragment file under
    ``events/`` and the business feed under ``subscriptions/`` is rebuilt
    from every fragment on disk after each change.
    """

    provider = CalendarProvider.APPLE

    def __init__(
        self,
        integrations,
        feed_dir: str | Path | None = None,
        public_base_path: str | None = None,
    ) -> None:
        super().__init__(integrations)
        self._feed_dir = Path(feed_dir) if feed_dir else None
        self._public_base_path = public_base_path
        self._feed_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._feed_dir or Path(get_settings().calendar.feed_dir)

    @property
    def events_dir(self) -> Path:
        return self.root / "events"

    @property
    def subscriptions_dir(self) -> Path:
        return self.root / "subscriptions"

    @property
    def public_base_path(self) -> str:
        base = self._public_base_path or get_settings().calendar.public_base_path
        return base.rstrip("/")

    @staticmethod
    def feed_filename(business_id: str) -> str:
        return f"business_{business_id}_calendar.ics"

    @staticmethod
    def event_filename(business_id: str, appointment_id: str) -> str:
        return f"business_{business_id}_event_{appointment_id}.ics"

    def feed_path(self, business_id: str) -> Path:
        return self.subscriptions_dir / self.feed_filename(business_id)

    def event_url(self, filename: str) -> str:
        return f"{self.public_base_path}/events/{filename}"

    def _ensure_dirs(self) -> None:
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self.subscriptions_dir.mkdir(parents=True, exist_ok=True)

    def _ensure_integration(self, business_id: str) -> CalendarIntegration:
        integration = self._integration(business_id)
        if integration is None:
            integration = self._integrations.upsert(
                CalendarIntegration(
                    business_id=business_id,
                    provider=self.provider,
                    data={"filename": self.feed_filename(business_id), "events": {}},
                )
            )
        return integration

    def _read_fragment(self, path: Path) -> str:
        # Bytes keep the CRLF line endings that text mode would translate.
        return path.read_bytes().decode("utf-8")

    def business_fragments(self, business_id: str) -> list[Path]:
        """Fragment files on disk owned by ``business_id``, sorted by name."""
        if not self.events_dir.exists():
            return []
        owned = []
        for path in self.events_dir.glob("business_*_event_*.ics"):
            # Appointment ids never contain "_event_", so the last one splits.
            stem = path.name[len("business_"):-len(".ics")]
            owner, _, _ = stem.rpartition("_event_")
            if owner == business_id:
                owned.append(path)
        return sorted(owned)

    def rebuild_feed(self, business_id: str) -> Path:
        """Rewrite the subscription feed from the fragments currently on disk."""
        self._ensure_dirs()
        with self._feed_lock:
            vevents = []
            for fragment in self.business_fragments(business_id):
                block = ics.extract_vevent(self._read_fragment(fragment))
                if block:
                    vevents.append(block)
            path = self.feed_path(business_id)
            path.write_text(ics.render_feed(business_id, vevents), encoding="utf-8", newline="")
        return path

    def get_subscription_url(self, business_id: str) -> str:
        self._ensure_integration(business_id)
        if not self.feed_path(business_id).exists():
            self.rebuild_feed(business_id)
        return f"{self.public_base_path}/subscriptions/{self.feed_filename(business_id)}"

    async def is_connected(self, business_id: str) -> bool:
        return self._integration(business_id) is not None

    async def sync_appointment(
        self, business_id: str, appointment: Appointment
    ) -> Optional[str]:
        integration = self._ensure_integration(business_id)
        events = dict(integration.data.get("events") or {})
        known = events.get(appointment.id) or {}
        # Reuse the existing id so repeated syncs overwrite one event.
        event_id = appointment.apple_event_id or known.get("eventId") or secrets.token_hex(16)
        filename = self.event_filename(business_id, appointment.id)

        self._ensure_dirs()
        (self.events_dir / filename).write_text(
            ics.render_event_calendar(event_id, appointment),
            encoding="utf-8",
            newline="",
        )
        events[appointment.id] = {"filename": filename, "eventId": event_id}
        integration.data = {**integration.data, "events": events}
        self._integrations.upsert(integration)
        self.rebuild_feed(business_id)

        logger.info(
            "apple_event_written",
            extra={"business_id": business_id, "appointment_id": appointment.id},
        )
        return event_id

    def _find_fragment_by_uid(self, business_id: str, event_id: str) -> Optional[Path]:
        uid_line = f"UID:{event_id}"
        for path in self.business_fragments(business_id):
            if uid_line in self._read_fragment(path).splitlines():
                return path
        return None

    async def delete_appointment(self, business_id: str, event_id: str) -> bool:
        integration = self._integration(business_id)
        events = dict((integration.data.get("events") if integration else None) or {})
        match = next(
            (
                (appointment_id, entry)
                for appointment_id, entry in events.items()
                if entry.get("eventId") == event_id
            ),
            None,
        )
        if match is not None:
            appointment_id, entry = match
            events.pop(appointment_id)
            integration.data = {**integration.data, "events": events}
            self._integrations.upsert(integration)
            fragment = self.events_dir / entry["filename"]
        else:
            # The integration record may be gone or recreated; the file is the truth.
            fragment = self._find_fragment_by_uid(business_id, event_id)
            if fragment is None:
                return False

        fragment.unlink(missing_ok=True)
        self.rebuild_feed(business_id)
        return True

    def purge(self, business_id: str) -> int:
        """Remove every fragment and the feed of a business; returns fragments removed."""
        fragments = self.business_fragments(business_id)
        with self._feed_lock:
            for path in fragments:
                path.unlink(missing_ok=True)
            self.feed_path(business_id).unlink(missing_ok=True)
        logger.info(
            "apple_feed_purged",
            extra={"business_id": business_id, "fragments": len(fragments)},
        )
        return len(fragments)

    def fragment_url(self, business_id: str, appointment_id: str) -> Optional[str]:
        integration = self._integration(business_id)
        if integration is None:
            return None
        entry = (integration.data.get("events") or {}).get(appointment_id)
        if not entry:
            return None
        return self.event_url(entry["filename"])
