"""
Copy Trading Errors

Every failure the copy-trading stack can report. Connection-level errors are
logged and skipped by the controller; only start/stop outcomes reach the UI.
"""

from typing import Optional


class CopyTradingError(Exception):
    """Base class. Carries the platform error code when there is one."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    @classmethod
    def from_response(cls, response: dict, default: str) -> "CopyTradingError":
        """Build from a Deriv `{"error": {"code", "message"}}` payload."""
        error = response.get("error") or {}
        return cls(error.get("message") or default, code=error.get("code"))


class ConfigError(CopyTradingError):
    """Missing or invalid configuration."""


class ConnectivityError(CopyTradingError):
    """No platform connection, or a transport that is not open."""


class AuthorizationError(CopyTradingError):
    """Login rejected by a connection."""


class NoTradersConnectedError(CopyTradingError):
    """Every trader login attempt failed."""


class QuoteError(CopyTradingError):
    """Proposal request rejected."""


class PurchaseError(CopyTradingError):
    """Buy request rejected."""


class RequestTimeoutError(CopyTradingError):
    """No matching response within the request timeout."""


class SubscriptionError(CopyTradingError):
    """Subscribe request rejected."""


class AlreadyActiveError(CopyTradingError):
    """start() called while a session is already running."""
