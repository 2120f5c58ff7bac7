from __future__ import annotations


class CalendarHubError(RuntimeError):
    """Base class for errors raised by the sync engine."""


class ConfigurationError(CalendarHubError):
    """Missing calendar identifier, ingestion URL or credentials. Never retried."""


class InvalidValueError(CalendarHubError, ValueError):
    """A value was rejected at the persistence boundary."""


class IngestionError(CalendarHubError):
    """The ICS feed could not be fetched."""


class TransientNetworkError(CalendarHubError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(CalendarHubError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class KeyRotationError(CalendarHubError):
    pass
