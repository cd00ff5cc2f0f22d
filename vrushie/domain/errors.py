"""Error taxonomy shared by the service layers."""

from typing import Optional


class VrushieError(Exception):
    """Base class for all service errors."""


class ConfigError(VrushieError):
    """Raised when startup configuration is invalid."""


class BindError(VrushieError):
    """Raised when the listening socket cannot be created."""


class AccessDenied(VrushieError):
    """Raised when the access policy refuses a client."""

    def __init__(self, reason: str, code: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code


class LocalIOError(VrushieError):
    """Raised when the served file cannot be opened or read."""


class TransferError(VrushieError):
    """Raised when writing the response to the client fails mid-stream."""

    def __init__(self, message: str, bytes_sent: int = 0) -> None:
        super().__init__(message)
        self.bytes_sent = bytes_sent


class ShutdownError(VrushieError):
    """Raised when graceful shutdown does not finish within the grace period."""
