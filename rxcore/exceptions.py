"""
Error taxonomy for the integration core.

Infrastructure errors (authentication, registry) propagate to the caller
with enough structure to decide on user messaging. Domain gaps
(a rule check's data source, the optional remote model) are absorbed by the
component that raised them and only degrade the result.
"""

from __future__ import annotations


class RxCoreError(Exception):
    """Base class for every error raised by rxcore."""


class AuthenticationError(RxCoreError):
    """The registry credential exchange failed. Never retried internally."""


class RegistryError(RxCoreError):
    """A registry call failed terminally or exhausted its retries."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None,
        retryable: bool,
        attempts: int,
        context: str = "",
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts
        self.context = context
        self.error_code = error_code
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class StatusTransitionError(RxCoreError):
    """Requested prescription status change is not allowed from the current status."""

    def __init__(self, prescription_id: str, current: str, target: str) -> None:
        self.prescription_id = prescription_id
        self.current = current
        self.target = target
        super().__init__(
            f"Prescription {prescription_id} cannot move from '{current}' to '{target}'"
        )


class ValidationDependencyError(RxCoreError):
    """A rule check could not reach the data it needs."""


class RemoteModelError(RxCoreError):
    """The remote validation model was unavailable or returned garbage."""
