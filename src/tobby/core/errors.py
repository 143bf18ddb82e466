"""Client domain exceptions."""

from __future__ import annotations


class TobbyError(Exception):
    """Base for client domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class ConfigurationError(TobbyError):
    """Config validation or load failure."""


class NotConnected(TobbyError):
    """Send attempted on a transport that is not OPEN."""

    def __init__(self, message: str = "Socket is not connected") -> None:
        super().__init__(message, code="not_connected")


class ProtocolError(TobbyError):
    """Malformed line or tag received from the server."""


class UnknownServerError(TobbyError):
    """Operation referenced a server id with no live connection."""
