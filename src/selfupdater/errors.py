"""
Error types for the self-updating supervisor.

This module defines the UpdaterError base class and the subclasses used across
the package. Every external call (git, process managers, heartbeat reads)
reports failure by raising one of these; the update state machine catches
them at the cycle boundary, logs them and retries on the next tick.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for updater errors.

    Attributes:
        error_code: Internal error code string (e.g., "pull_failure",
            "restart_failure", "unavailable").
        message: Human-readable error message.
        details: Optional structured details (e.g., command output, revision).

    Example:
        >>> raise UpdaterError(
        ...     error_code="pull_failure",
        ...     message="git pull exited with status 1",
        ...     details={"branch": "main"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdaterError):
    """
    Error raised for invalid input, such as bad configuration values or an
    invalid state machine transition.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(UpdaterError):
    """
    Error raised when an external command cannot be run at all: the binary
    is missing or the call exceeded its timeout.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(UpdaterError):
    """
    Error raised when an operation is attempted in the wrong state, e.g.
    scheduling a second health verdict while one is still pending.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(UpdaterError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class PullError(UpdaterError):
    """Fetching upstream changes failed (network, merge conflict, timeout)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PullError."""
        super().__init__(error_code="pull_failure", message=message, details=details)


class DiffError(UpdaterError):
    """Listing the changed paths between two revisions failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DiffError."""
        super().__init__(error_code="diff_failure", message=message, details=details)


class ResetError(UpdaterError):
    """Hard-resetting the working copy to a revision failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResetError."""
        super().__init__(
            error_code="reset_failure", message=message, details=details
        )


class RestartError(UpdaterError):
    """
    Bringing the application back up failed.

    During rollback this is the one failure surfaced at CRITICAL level,
    since it can leave no application running at all.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RestartError."""
        super().__init__(
            error_code="restart_failure", message=message, details=details
        )


class HealthReadError(UpdaterError):
    """The heartbeat file is missing, unreadable or malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a HealthReadError."""
        super().__init__(
            error_code="health_read_failure", message=message, details=details
        )
