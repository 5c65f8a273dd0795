from __future__ import annotations

from datetime import datetime


class RelayGateError(Exception):
    """Base error for RelayGate."""


class ValidationError(RelayGateError):
    """Bad caller input; surfaced immediately without state changes."""


class NotFoundError(RelayGateError):
    """Unknown instance, subscription or credential."""


class AlreadyExistsError(RelayGateError):
    """A live session is already registered for the instance."""


class NotInitializedError(ValidationError):
    """Instance has no registered session configuration."""


class NotConnectedError(ValidationError):
    """Instance has no connected session for the requested command."""


class ProtocolConnectionError(RelayGateError):
    """Protocol client failed to open or operate a session."""


class ProviderConfigError(RelayGateError):
    """Missing or invalid protocol client configuration."""


class DispatchError(RelayGateError):
    """A single webhook delivery attempt failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceUnavailableError(RelayGateError):
    """Service is shutting down or a dependency is unavailable."""


class QuotaUnavailableError(ServiceUnavailableError):
    """Quota backend failed while running in fail-closed mode."""


class QuotaExceededError(RelayGateError):
    """A gated action was rejected by a usage window."""

    def __init__(self, *, scope: str, used: int, limit: int, reset_at: datetime) -> None:
        super().__init__(f"{scope} quota exceeded ({used}/{limit})")
        self.scope = scope
        self.used = used
        self.limit = limit
        self.reset_at = reset_at

    def to_details(self) -> dict[str, object]:
        return {
            "scope": self.scope,
            "used": self.used,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
        }
