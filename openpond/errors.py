"""
Error types for the OpenPond SDK.

Startup and configuration problems are raised to the caller. Everything that
goes wrong inside a running delivery loop is handed to the error callback as
one of these instances instead.
"""

from typing import Optional


class OpenPondError(Exception):
    """Base class for every error raised or reported by the SDK."""


class ApiError(OpenPondError):
    """The remote service answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str = ""):
        self.status = status
        self.message = message
        super().__init__(f"API error: {status} - {message}")


class NetworkError(OpenPondError):
    """Transport-level failure: refused connection, DNS, timeout, dropped stream."""


class SerializationError(OpenPondError):
    """The remote service sent a payload that could not be decoded."""

    def __init__(self, message: str, payload: Optional[str] = None):
        self.payload = payload
        super().__init__(message)


class ConfigurationError(OpenPondError):
    """The session configuration is unusable."""


__all__ = [
    "OpenPondError",
    "ApiError",
    "NetworkError",
    "SerializationError",
    "ConfigurationError",
]
