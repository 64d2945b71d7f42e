"""Exception hierarchy for trackgate.

Every error raised by the admission core derives from ``TrackgateError`` so
that the pipeline boundary can turn any of them into a typed denial.
"""

from __future__ import annotations

from typing import Any


class TrackgateError(Exception):
    """Base exception for all trackgate errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize trackgate error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(TrackgateError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class InvalidAddressError(ValidationError):
    """Unparseable network address or address range."""


class InvalidIdentityError(ValidationError):
    """Identity is missing fields required to issue a credential."""


class NotFoundError(TrackgateError):
    """Referenced record does not exist."""


class AccountNotFoundError(NotFoundError):
    """Account does not exist."""


class BanNotFoundError(NotFoundError):
    """Address or account ban does not exist."""


class ResourceNotFoundError(NotFoundError):
    """Tracked resource (torrent) does not exist."""


class BanStateError(TrackgateError):
    """Ban is in the wrong state for the requested transition."""


class BanAlreadyInactiveError(BanStateError):
    """Ban was already deactivated."""


class SecurityError(TrackgateError):
    """Security-related errors."""


class LockedOutError(SecurityError):
    """Too many failed authentication attempts from an address."""


class BannedError(SecurityError):
    """Address or account is banned."""


class CredentialError(SecurityError):
    """Bearer credential could not be accepted."""


class MalformedCredentialError(CredentialError):
    """Credential is structurally invalid or carries a bad signature."""


class ExpiredCredentialError(CredentialError):
    """Credential lifetime has elapsed."""


class RevokedCredentialError(CredentialError):
    """Credential was revoked before its natural expiry."""


class UnknownIdentityError(CredentialError):
    """Credential subject no longer exists."""


class StoreUnavailableError(TrackgateError):
    """Shared store or ban store did not answer in time."""
