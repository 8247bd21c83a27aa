"""Error taxonomy shared by the credential authorization layers."""

from __future__ import annotations

import asyncio
from typing import Optional


class StratusError(Exception):
    """Base class for domain errors raised while authorizing credentials."""

    def __init__(self, message: str, *, help_topic: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.help_topic = help_topic


class CredentialValidationError(StratusError, ValueError):
    """Raised when a request is rejected before any network call is made."""


class KeyFormatError(StratusError, ValueError):
    """Raised when an authorized key line or certificate cannot be parsed."""

    @classmethod
    def for_excerpt(cls, what: str, value: str, limit: int = 40) -> "KeyFormatError":
        excerpt = value if len(value) <= limit else value[:limit] + "..."
        return cls(f"{what} is malformed: {excerpt!r}")


class PolicyError(StratusError):
    """Raised when instance or project policy forbids the requested authorization."""


class LegacyKeyFormatError(StratusError):
    """Raised when an instance still carries legacy single-field SSH keys."""


class KeyPushPermissionError(StratusError):
    """Raised when publishing a key to metadata is denied."""


class AccessDeniedError(StratusError):
    """Raised when the OS Login service denies an operation."""


class InvalidOsLoginProfileError(StratusError):
    """Raised when a login profile lacks a usable POSIX account."""


class ExternalIdpNotConfiguredError(StratusError):
    """Raised when a workforce identity provider lacks a POSIX username mapping."""


class ApiError(StratusError):
    """Raised for non-successful responses from a Google API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        reason: Optional[str] = None,
        help_topic: Optional[str] = None,
    ) -> None:
        super().__init__(message, help_topic=help_topic)
        self.status_code = status_code
        self.reason = reason


class ResourceNotFoundError(ApiError):
    """Raised when a resource or login profile does not exist (HTTP 404)."""

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message, status_code=404, reason=reason)


class ServiceUnavailableError(ApiError):
    """Raised when an API reports a transient failure (HTTP 503)."""

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message, status_code=503, reason=reason)


class MetadataConflictError(ApiError):
    """Raised when a metadata write lost an optimistic concurrency race (HTTP 412)."""

    def __init__(self, message: str, *, attempts: int = 1, reason: Optional[str] = None) -> None:
        super().__init__(message, status_code=412, reason=reason)
        self.attempts = attempts


class AuthorizationCancelledError(asyncio.CancelledError):
    """Raised when an authorization attempt is cancelled by its caller.

    Derives from ``asyncio.CancelledError`` so that ``except Exception`` blocks
    never mistake it for an authorization failure and task cancellation keeps
    working as usual.
    """
