"""
Tests for heartbeat-based liveness checks.

Tests cover:
- HealthCheckResult
- read_heartbeat parsing and failures
- check() freshness judgement against the timeout
"""

from __future__ import annotations

from pathlib import Path

import pytest

from selfupdater.errors import HealthReadError
from selfupdater.updates.liveness import HealthCheckResult, LivenessMonitor

NOW_MS = 30000


@pytest.fixture
def health_file(tmp_path: Path) -> Path:
    return tmp_path / ".alive"


@pytest.fixture
def monitor(health_file: Path) -> LivenessMonitor:
    return LivenessMonitor(health_file, timeout_ms=20000, clock=lambda: NOW_MS)


class TestHealthCheckResult:
    """Tests for HealthCheckResult class."""

    def test_to_dict(self) -> None:
        result = HealthCheckResult(
            name="heartbeat",
            passed=True,
            message="Heartbeat 5000ms old",
            details={"age_ms": 5000},
        )

        assert result.to_dict() == {
            "name": "heartbeat",
            "passed": True,
            "message": "Heartbeat 5000ms old",
            "details": {"age_ms": 5000},
        }

    def test_details_default(self) -> None:
        assert HealthCheckResult(name="heartbeat", passed=False).details == {}


class TestReadHeartbeat:
    """Tests for read_heartbeat."""

    def test_reads_timestamp(self, monitor, health_file) -> None:
        health_file.write_text("1700000000000")
        assert monitor.read_heartbeat() == 1700000000000

    def test_surrounding_whitespace_is_ignored(self, monitor, health_file) -> None:
        health_file.write_text("25000\n")
        assert monitor.read_heartbeat() == 25000

    def test_missing_file(self, monitor) -> None:
        with pytest.raises(HealthReadError) as exc_info:
            monitor.read_heartbeat()

        assert "not found" in exc_info.value.message

    @pytest.mark.parametrize("content", ["", "abc", "12.5", "-100", "1e5", "0x10"])
    def test_malformed_content(self, monitor, health_file, content: str) -> None:
        """Test that anything but a plain decimal integer is rejected."""
        health_file.write_text(content)

        with pytest.raises(HealthReadError):
            monitor.read_heartbeat()

    def test_binary_garbage(self, monitor, health_file) -> None:
        health_file.write_bytes(b"\xff\xfe\x00")

        with pytest.raises(HealthReadError):
            monitor.read_heartbeat()


class TestCheck:
    """Tests for check() and is_healthy()."""

    def test_fresh_heartbeat_passes(self, monitor, health_file) -> None:
        """Heartbeat 5000ms old with a 20000ms timeout."""
        health_file.write_text("25000")

        result = monitor.check()

        assert result.passed is True
        assert result.name == "heartbeat"
        assert result.details == {"age_ms": 5000, "timeout_ms": 20000}
        assert monitor.is_healthy()

    def test_stale_heartbeat_fails(self, monitor, health_file) -> None:
        """Heartbeat 25000ms old with a 20000ms timeout."""
        health_file.write_text("5000")

        result = monitor.check()

        assert result.passed is False
        assert result.details["age_ms"] == 25000
        assert not monitor.is_healthy()

    def test_age_equal_to_timeout_fails(self, monitor, health_file) -> None:
        health_file.write_text("10000")
        assert monitor.check().passed is False

    def test_missing_file_fails(self, monitor) -> None:
        result = monitor.check()

        assert result.passed is False
        assert "not found" in result.message

    def test_non_numeric_fails(self, monitor, health_file) -> None:
        health_file.write_text("alive")
        assert monitor.check().passed is False

    def test_default_clock_is_wall_time(self, health_file) -> None:
        import time

        health_file.write_text(str(int(time.time() * 1000)))
        monitor = LivenessMonitor(health_file, timeout_ms=60000)

        assert monitor.is_healthy()
