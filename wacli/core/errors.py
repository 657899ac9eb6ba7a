"""Error taxonomy for the daemon core.

Daemon-side, every one of these ends up as the ``error`` string of an RPC
response. Client-side, callers only care about success vs. failure, so all
of them share the ``WacliError`` base.
"""

from typing import Optional


class WacliError(Exception):
    """Base class for all wacli failures."""


class ConfigError(WacliError):
    """Configuration is missing or unusable."""


class AuthError(WacliError):
    """Request carried a missing or wrong token."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ProtocolError(WacliError):
    """A request line could not be decoded."""

    def __init__(self, message: str = "Invalid JSON"):
        super().__init__(message)


class UnknownMethodError(WacliError):
    """Request named a method outside the RPC method set."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown RPC method: {method}")


class ApplicationError(WacliError):
    """A session operation failed; the message is passed through verbatim."""


class IpcError(WacliError):
    """
    Any client-side failure of a single RPC call.

    Timeouts, a socket closing before the reply, connection errors and
    error responses from the daemon all collapse into this one type.
    """

    def __init__(self, method: str, message: str):
        self.method = method
        super().__init__(message)


class StaleStateError(WacliError):
    """A descriptor exists but no daemon answers on its port."""


class BootFailure(WacliError):
    """A session failed to reach the ready state."""


class NotLoggedInError(BootFailure):
    """The session asked for a QR scan, so no stored login exists."""


class BootTimeoutError(BootFailure):
    """The session did not become ready in time."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__(message)


class SessionError(BootFailure):
    """The session reported an error while booting."""
