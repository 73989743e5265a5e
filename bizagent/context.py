from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from . import repositories
from .config import get_settings
from .services.availability import AvailabilityEngine
from .services.booking import BookingCoordinator
from .services.calendar_sync import CalendarSyncOrchestrator
from .services.oauth_tokens import OAuthCredentialProvider
from .services.providers.apple import AppleCalendarAdapter
from .services.providers.google import GoogleCalendarAdapter
from .services.providers.microsoft import MicrosoftCalendarAdapter
from .services.triage import CallTriageEngine


@dataclass
class ServiceContext:
    """Everything a request handler needs, wired against one set of repositories."""

    businesses: object
    hours: object
    services: object
    appointments: object
    integrations: object
    receptionist_configs: object
    call_logs: object
    booking: BookingCoordinator
    availability: AvailabilityEngine
    calendar: CalendarSyncOrchestrator
    triage: CallTriageEngine


def build_context(
    *,
    businesses=None,
    hours=None,
    services=None,
    appointments=None,
    integrations=None,
    receptionist_configs=None,
    call_logs=None,
    adapters=None,
    credentials: OAuthCredentialProvider | None = None,
    clock=None,
) -> ServiceContext:
    businesses = businesses or repositories.businesses_repo
    hours = hours or repositories.hours_repo
    services = services or repositories.services_repo
    appointments = appointments or repositories.appointments_repo
    integrations = integrations or repositories.integrations_repo
    receptionist_configs = receptionist_configs or repositories.receptionist_config_repo
    call_logs = call_logs or repositories.call_logs_repo

    calendar_settings = get_settings().calendar
    if adapters is None:
        adapters = [
            GoogleCalendarAdapter(integrations),
            MicrosoftCalendarAdapter(integrations),
            AppleCalendarAdapter(integrations, feed_dir=calendar_settings.feed_dir),
        ]

    booking = BookingCoordinator(businesses, appointments, services)
    availability = AvailabilityEngine(businesses, hours, services, booking)
    calendar = CalendarSyncOrchestrator(
        appointments, integrations, adapters, credentials=credentials
    )
    triage = CallTriageEngine(
        businesses,
        hours,
        services,
        receptionist_configs,
        call_logs,
        booking,
        availability,
        clock=clock,
    )
    return ServiceContext(
        businesses=businesses,
        hours=hours,
        services=services,
        appointments=appointments,
        integrations=integrations,
        receptionist_configs=receptionist_configs,
        call_logs=call_logs,
        booking=booking,
        availability=availability,
        calendar=calendar,
        triage=triage,
    )


@lru_cache(maxsize=1)
def get_context() -> ServiceContext:
    return build_context()
