"""
Liveness monitor for verifying updates.

The supervised application periodically rewrites a heartbeat file with the
current time as a decimal millisecond epoch. The application is considered
healthy while that timestamp is younger than the configured timeout.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from selfupdater.errors import HealthReadError
from selfupdater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEALTH_TIMEOUT_MS = 20000

_TIMESTAMP_PATTERN = re.compile(r"^\d+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


class LivenessMonitor:
    """
    Judges application health from the age of its heartbeat file.

    Attributes:
        health_file: Path of the heartbeat file.
        timeout_ms: Maximum heartbeat age considered healthy.
    """

    def __init__(
        self,
        health_file: Path | str,
        timeout_ms: int = DEFAULT_HEALTH_TIMEOUT_MS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the liveness monitor.

        Args:
            health_file: Path of the heartbeat file.
            timeout_ms: Maximum heartbeat age in milliseconds.
            clock: Returns the current time in epoch milliseconds.
        """
        self.health_file = Path(health_file)
        self.timeout_ms = timeout_ms
        self._clock = clock or _now_ms

    def read_heartbeat(self) -> int:
        """
        Read the last heartbeat timestamp.

        Returns:
            Heartbeat time in epoch milliseconds.

        Raises:
            HealthReadError: If the file is missing, unreadable, or does not
                contain a plain decimal integer.
        """
        try:
            content = self.health_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise HealthReadError(
                f"Heartbeat file not found: {self.health_file}",
                details={"path": str(self.health_file)},
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise HealthReadError(
                f"Could not read heartbeat file: {exc}",
                details={"path": str(self.health_file)},
            ) from exc

        if not _TIMESTAMP_PATTERN.match(content):
            raise HealthReadError(
                "Heartbeat file does not contain a millisecond timestamp",
                details={"path": str(self.health_file), "content": content[:64]},
            )

        return int(content)

    def check(self) -> HealthCheckResult:
        """
        Check heartbeat freshness.

        Returns:
            HealthCheckResult; passed iff ``now - heartbeat < timeout``.
        """
        try:
            heartbeat = self.read_heartbeat()
        except HealthReadError as e:
            logger.warning(f"Heartbeat unavailable: {e.message}", extra=e.details)
            return HealthCheckResult(
                name="heartbeat",
                passed=False,
                message=e.message,
                details=e.details,
            )

        age_ms = self._clock() - heartbeat
        passed = age_ms < self.timeout_ms
        details = {"age_ms": age_ms, "timeout_ms": self.timeout_ms}

        if passed:
            logger.debug("Heartbeat is fresh", extra=details)
            message = f"Heartbeat {age_ms}ms old"
        else:
            logger.warning("Heartbeat is stale", extra=details)
            message = f"Heartbeat {age_ms}ms old exceeds {self.timeout_ms}ms"

        return HealthCheckResult(
            name="heartbeat",
            passed=passed,
            message=message,
            details=details,
        )

    def is_healthy(self) -> bool:
        """Return True if the heartbeat is present and fresh."""
        return self.check().passed
