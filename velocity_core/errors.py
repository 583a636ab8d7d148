"""Client error types for VelocityVault clearnode and backend interactions."""

from __future__ import annotations


class VelocityClientError(Exception):
    """Base error for VelocityVault client failures."""


class VelocityTimeout(VelocityClientError):
    """Timeout while communicating with the clearnode or backend."""


class VelocityConnectionError(VelocityClientError):
    """No wallet account, or the network connection failed."""


class VelocityHandshakeError(VelocityClientError):
    """WebSocket handshake failed."""


class VelocityResponseError(VelocityClientError):
    """HTTP response error from the backend or routing service."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class VelocityPreconditionError(VelocityClientError):
    """An intent was rejected before any network I/O."""


class VelocityNoChannelError(VelocityPreconditionError):
    """The intent requires an open channel and none exists."""


class VelocityRemoteError(VelocityClientError):
    """The clearnode answered with an error envelope."""

    def __init__(self, message: str, request_id: int | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class VelocityValidationError(VelocityClientError, ValueError):
    """Malformed address or schema-invalid payload at the backend boundary."""


class ConfigLoadError(VelocityClientError):
    """Configuration file missing or malformed."""
