# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
# cyberrange/core/exceptions.py
"""Custom exceptions for the Cyber Range Manager."""

from cyberrange.core.constants import LOCKED_SIGNATURE, NOT_FOUND_SIGNATURES


class CyberRangeError(Exception):
    """Base exception for all Cyber Range errors."""

    pass


class ConfigurationError(CyberRangeError):
    """Raised when required configuration is missing or invalid."""

    pass


class NoCapacityError(CyberRangeError):
    """Raised when no host in the pool has enough free resources."""

    pass


class TemplateNotFoundError(CyberRangeError):
    """Raised when the template container is missing from the chosen host."""

    pass


class ProvisioningError(CyberRangeError):
    """Raised when a create run produced no instance at all."""

    pass


class RunLockedError(CyberRangeError):
    """Raised when another orchestration run already holds the run lock."""

    pass


class ReadinessTimeoutError(CyberRangeError):
    """Raised when a readiness probe does not succeed within its budget."""

    pass


class RemoteCommandError(CyberRangeError):
    """Raised when the SSH command channel fails to connect or execute."""

    pass


class RemoteAPIError(CyberRangeError):
    """Error returned by a remote HTTP API.

    Attributes:
        status_code: HTTP status code of the failed response, if any.
        detail: Error detail reported by the remote service, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    @property
    def is_not_found(self) -> bool:
        """Whether the error means the target resource does not exist."""
        if self.status_code == 404:
            return True
        text = f"{self} {self.detail or ''}".lower()
        return any(signature in text for signature in NOT_FOUND_SIGNATURES)


class FleetAPIError(RemoteAPIError):
    """Raised when the compute fleet API rejects a request."""

    @property
    def is_locked(self) -> bool:
        """Whether the error is the transient 'resource locked' condition."""
        return LOCKED_SIGNATURE in f"{self} {self.detail or ''}"


class AccessServiceError(RemoteAPIError):
    """Raised when the access service API rejects a request."""

    pass


class AccessAuthenticationError(AccessServiceError):
    """Raised when the access service token exchange fails."""

    pass
