"""Custom exceptions for the stockstream client.

All modules should raise these exceptions instead of generic ones.
Connection-level errors are never raised out of the ConnectionManager;
they are stored as `last_error` and published with the state change.
Credential and notification-permission errors degrade locally.
"""

from __future__ import annotations


class StockStreamError(Exception):
    """Base exception for all stockstream errors.

    Args:
        message: Human-readable error description.
        context: Optional dict of structured data for logging/debugging.
    """

    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            # Filter out anything that looks like a secret
            safe_context = {
                k: "[REDACTED]" if _is_secret_key(k) else v for k, v in self.context.items()
            }
            return f"{super().__str__()} | context={safe_context}"
        return super().__str__()


class CredentialError(StockStreamError):
    """Stored credential is absent, expired, or corrupt."""


class PermissionDenied(StockStreamError):
    """Notification permission was refused by the user or platform."""


# ─── Connection ───


class ConnectionFailure(StockStreamError):
    """Base class for failures surfaced through the connection state."""


class TransportError(ConnectionFailure):
    """Socket-level failure: could not open, or the connection dropped."""


class AuthRejected(ConnectionFailure):
    """The server explicitly refused the bearer token during the handshake."""


class HandshakeTimeout(ConnectionFailure):
    """No definitive handshake response arrived within the attempt timeout."""


class RetryBudgetExhausted(ConnectionFailure):
    """Automatic reconnection gave up after the configured number of attempts."""


# ─── REST ───


class ApiError(StockStreamError):
    """Generic REST error with status code and response details."""


class ApiAuthError(ApiError):
    """401 response: the bearer credential is invalid or expired."""


class ApiConnectionError(ApiError):
    """Network issue or timeout talking to the REST backend."""


def _is_secret_key(key: str) -> bool:
    """Check if a dict key name suggests it contains secret data."""
    secret_words = {"key", "secret", "password", "token", "private", "credential"}
    key_lower = key.lower()
    return any(word in key_lower for word in secret_words)
