from __future__ import annotations

from typing import Any


class BizAgentError(Exception):
    """Base class for domain errors surfaced by the booking stack."""

    status_code = 500
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(BizAgentError):
    """Malformed input. Never retried."""

    status_code = 422
    code = "validation_error"


class NotFoundError(BizAgentError):
    """Unknown business, appointment or integration."""

    status_code = 404
    code = "not_found"


class ConflictError(BizAgentError):
    """Requested slot is taken; carries alternative slots when known."""

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, alternatives: list[Any] | None = None) -> None:
        super().__init__(message)
        self.alternatives = list(alternatives or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["alternatives"] = [
            alt.to_dict() if hasattr(alt, "to_dict") else alt
            for alt in self.alternatives
        ]
        return payload


class ProviderSyncError(BizAgentError):
    """Failure scoped to a single calendar provider."""

    status_code = 502
    code = "provider_sync_error"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
