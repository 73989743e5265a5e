from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


DEFAULT_EMERGENCY_KEYWORDS = [
    "emergency",
    "urgent",
    "flood",
    "gas leak",
    "fire",
    "burst pipe",
    "no heat",
]


class BookingSettings(BaseModel):
    default_duration_minutes: int = 60
    slot_granularity_minutes: int = 30
    lookahead_days: int = 7
    # IANA zone used to interpret BusinessHours wall-clock times when a
    # business has no timezone of its own.
    timezone: str = "UTC"


class CalendarSettings(BaseModel):
    feed_dir: str = "./public/calendar"
    public_base_path: str = "/calendar"
    provider_timeout_seconds: float = 10.0
    google_calendar_id: str = "primary"
    microsoft_graph_base: str = "https://graph.microsoft.com/v1.0"


class OAuthSettings(BaseModel):
    redirect_base: str = "http://localhost:8000/v1/calendar"
    state_secret: str = "dev-secret"
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_scopes: str = "https://www.googleapis.com/auth/calendar.events"
    microsoft_client_id: str | None = None
    microsoft_client_secret: str | None = None
    microsoft_tenant: str = "common"
    microsoft_scopes: str = "offline_access Calendars.ReadWrite"


class ReceptionistSettings(BaseModel):
    emergency_keywords: list[str] = list(DEFAULT_EMERGENCY_KEYWORDS)
    emergency_transfer_number: str | None = None
    default_greeting: str = "How can I assist you today?"
    default_after_hours_message: str = "Our office is currently closed."


class AppSettings(BaseModel):
    booking: BookingSettings = BookingSettings()
    calendar: CalendarSettings = CalendarSettings()
    oauth: OAuthSettings = OAuthSettings()
    receptionist: ReceptionistSettings = ReceptionistSettings()
    storage_backend: str = "memory"
    owner_dashboard_token: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        raw_duration = os.getenv("BOOKING_DEFAULT_DURATION_MINUTES", "60")
        raw_granularity = os.getenv("BOOKING_SLOT_GRANULARITY_MINUTES", "30")
        try:
            default_duration = int(raw_duration)
        except ValueError:
            default_duration = 60
        try:
            granularity = int(raw_granularity)
        except ValueError:
            granularity = 30
        booking = BookingSettings(
            default_duration_minutes=default_duration,
            slot_granularity_minutes=granularity,
            lookahead_days=int(os.getenv("BOOKING_LOOKAHEAD_DAYS", "7")),
            timezone=os.getenv("BUSINESS_TIMEZONE", "UTC"),
        )
        calendar = CalendarSettings(
            feed_dir=os.getenv("CALENDAR_FEED_DIR", "./public/calendar"),
            public_base_path=os.getenv("CALENDAR_PUBLIC_BASE_PATH", "/calendar"),
            provider_timeout_seconds=float(
                os.getenv("CALENDAR_PROVIDER_TIMEOUT_SECONDS") or "10"
            ),
            google_calendar_id=os.getenv("GOOGLE_CALENDAR_ID", "primary"),
            microsoft_graph_base=os.getenv(
                "MICROSOFT_GRAPH_BASE", "https://graph.microsoft.com/v1.0"
            ),
        )
        oauth = OAuthSettings(
            redirect_base=os.getenv(
                "OAUTH_REDIRECT_BASE", "http://localhost:8000/v1/calendar"
            ),
            state_secret=os.getenv("AUTH_STATE_SECRET", "dev-secret"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            google_scopes=os.getenv(
                "GCALENDAR_SCOPES", "https://www.googleapis.com/auth/calendar.events"
            ),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID"),
            microsoft_client_secret=os.getenv("MICROSOFT_CLIENT_SECRET"),
            microsoft_tenant=os.getenv("MICROSOFT_TENANT", "common"),
            microsoft_scopes=os.getenv(
                "MICROSOFT_SCOPES", "offline_access Calendars.ReadWrite"
            ),
        )
        raw_keywords = os.getenv("EMERGENCY_KEYWORDS")
        emergency_keywords = (
            [k.strip() for k in raw_keywords.split(",") if k.strip()]
            if raw_keywords
            else list(DEFAULT_EMERGENCY_KEYWORDS)
        )
        receptionist = ReceptionistSettings(
            emergency_keywords=emergency_keywords,
            emergency_transfer_number=os.getenv("EMERGENCY_TRANSFER_NUMBER"),
            default_greeting=os.getenv(
                "RECEPTIONIST_GREETING", "How can I assist you today?"
            ),
            default_after_hours_message=os.getenv(
                "RECEPTIONIST_AFTER_HOURS_MESSAGE", "Our office is currently closed."
            ),
        )
        # OWNER_DASHBOARD_TOKEN is the canonical env var; DASHBOARD_OWNER_TOKEN
        # is accepted as a legacy alias.
        owner_dashboard_token = os.getenv("OWNER_DASHBOARD_TOKEN") or os.getenv(
            "DASHBOARD_OWNER_TOKEN"
        )
        return cls(
            booking=booking,
            calendar=calendar,
            oauth=oauth,
            receptionist=receptionist,
            storage_backend=os.getenv("STORAGE_BACKEND", "memory").lower(),
            owner_dashboard_token=owner_dashboard_token,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def validate_combinations(self) -> None:
        """Warn when providers are misconfigured to avoid runtime surprises."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if self.oauth.google_client_id and not self.oauth.google_client_secret:
            warnings.append(
                "GOOGLE_CLIENT_SECRET is missing while GOOGLE_CLIENT_ID is set."
            )
        if self.oauth.microsoft_client_id and not self.oauth.microsoft_client_secret:
            warnings.append(
                "MICROSOFT_CLIENT_SECRET is missing while MICROSOFT_CLIENT_ID is set."
            )
        if self.storage_backend not in {"memory", "db"}:
            warnings.append(
                f"Unknown STORAGE_BACKEND={self.storage_backend!r}; using memory."
            )
        if self.calendar.provider_timeout_seconds <= 0:
            warnings.append("CALENDAR_PROVIDER_TIMEOUT_SECONDS must be positive.")
        if self.booking.slot_granularity_minutes <= 0:
            warnings.append("BOOKING_SLOT_GRANULARITY_MINUTES must be positive.")
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return application settings loaded from the environment.

    The result is cached for the lifetime of the process so configuration
    is stable and we avoid repeatedly parsing environment variables.
    """
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
