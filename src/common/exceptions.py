"""Error taxonomy shared by the gateway and the sync core."""

from __future__ import annotations


class ServiceDeskError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ServiceDeskError, ValueError):
    """Required configuration (credentials, endpoints) is missing."""


class ValidationError(ServiceDeskError):
    """Caller-fixable input problem. Never retried, never sent to the gateway."""


class InvalidTransition(ServiceDeskError):
    """A status change that the request workflow does not allow."""

    def __init__(self, current: str, target: str, reason: str = "") -> None:
        self.current = current
        self.target = target
        message = f"Cannot move request from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class FetchError(ServiceDeskError):
    """A read against the gateway failed (network, permission, server)."""


class FetchTimeout(FetchError):
    """A read did not complete within the fetch timeout window."""


class PersistError(ServiceDeskError):
    """A write passed validation but the gateway rejected it."""


class UpdateError(PersistError):
    """A status/field update on an existing request failed."""


class UploadError(ServiceDeskError):
    """Object storage refused a file; the enclosing flow must abort."""
