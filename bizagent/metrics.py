from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class ProviderSyncMetrics:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    deletes: int = 0
    delete_failures: int = 0


@dataclass
class Metrics:
    total_requests: int = 0
    total_errors: int = 0
    appointments_scheduled: int = 0
    booking_conflicts: int = 0
    booking_validation_errors: int = 0
    calls_triaged: int = 0
    emergency_calls: int = 0
    triage_failures: int = 0
    calls_by_intent: Dict[str, int] = field(default_factory=dict)
    provider_sync: Dict[str, ProviderSyncMetrics] = field(default_factory=dict)

    def for_provider(self, provider: str) -> ProviderSyncMetrics:
        return self.provider_sync.setdefault(provider, ProviderSyncMetrics())

    def record_intent(self, intent: str) -> None:
        self.calls_triaged += 1
        self.calls_by_intent[intent] = self.calls_by_intent.get(intent, 0) + 1

    def reset(self) -> None:
        fresh = Metrics()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "appointments_scheduled": self.appointments_scheduled,
            "booking_conflicts": self.booking_conflicts,
            "booking_validation_errors": self.booking_validation_errors,
            "calls_triaged": self.calls_triaged,
            "emergency_calls": self.emergency_calls,
            "triage_failures": self.triage_failures,
            "calls_by_intent": dict(self.calls_by_intent),
            "provider_sync": {
                name: {
                    "attempts": m.attempts,
                    "successes": m.successes,
                    "failures": m.failures,
                    "timeouts": m.timeouts,
                    "deletes": m.deletes,
                    "delete_failures": m.delete_failures,
                }
                for name, m in self.provider_sync.items()
            },
        }


metrics = Metrics()
