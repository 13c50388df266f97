"""Error taxonomy shared by the telemetry pipeline."""

from __future__ import annotations


class HubError(Exception):
    """Base class for recoverable hub failures."""


class ExternalFetchError(HubError):
    """A station or forecast provider was unreachable, timed out or answered with an error status."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class MalformedPayloadError(ExternalFetchError):
    """A provider answered, but not with the shape we expect."""


class PersistenceError(HubError):
    """A store read or write failed."""


class DeliveryError(HubError):
    """A single push endpoint rejected a notification."""

    def __init__(self, endpoint: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code

    @property
    def expired(self) -> bool:
        return self.status_code in (404, 410)


class ConfigError(HubError):
    """A runtime setting was rejected."""


__all__ = [
    "ConfigError",
    "DeliveryError",
    "ExternalFetchError",
    "HubError",
    "MalformedPayloadError",
    "PersistenceError",
]
