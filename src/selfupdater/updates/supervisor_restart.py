"""
Supervisor-managed restart.

The application is owned by an external supervisor (pm2 or systemd); a
restart is a single "restart <name>" command and the supervisor takes care
of replacing the process.
"""

from __future__ import annotations

from selfupdater.errors import RestartError, UnavailableError
from selfupdater.logging import get_logger
from selfupdater.updates.commands import DEFAULT_COMMAND_TIMEOUT, run_command
from selfupdater.updates.controllers import ProcessController, RestartStrategy

logger = get_logger(__name__)

SUPERVISOR_COMMANDS: dict[str, tuple[str, ...]] = {
    "pm2": ("pm2", "restart"),
    "systemd": ("systemctl", "restart"),
}


class SupervisorController(ProcessController):
    """
    Restarts the application through pm2 or systemctl.

    Attributes:
        app_name: Application/service name known to the supervisor.
        backend: "pm2" or "systemd".
        timeout: Command timeout in seconds.
    """

    strategy = RestartStrategy.SUPERVISOR

    def __init__(
        self,
        app_name: str,
        backend: str = "pm2",
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        """
        Initialize the SupervisorController.

        Args:
            app_name: Application/service name known to the supervisor.
            backend: "pm2" or "systemd".
            timeout: Command timeout in seconds.
        """
        if backend not in SUPERVISOR_COMMANDS:
            raise ValueError(f"Unknown supervisor backend: {backend}")
        self.app_name = app_name
        self.backend = backend
        self.timeout = timeout

    async def restart(self) -> None:
        """Issue the restart command; raise RestartError on failure."""
        command = (*SUPERVISOR_COMMANDS[self.backend], self.app_name)
        logger.info(f"Restarting {self.app_name} via {self.backend}")

        try:
            returncode, stdout, stderr = await run_command(
                *command, timeout=self.timeout
            )
        except UnavailableError as e:
            raise RestartError(
                f"{self.backend} restart failed: {e.message}",
                details={"app_name": self.app_name, "backend": self.backend},
            ) from e

        if returncode != 0:
            raise RestartError(
                f"{self.backend} restart failed: {(stderr or stdout).strip()}",
                details={
                    "app_name": self.app_name,
                    "backend": self.backend,
                    "returncode": returncode,
                },
            )

        logger.info(f"{self.backend} restarted {self.app_name}")

    def describe(self) -> dict[str, str]:
        return {
            "strategy": self.strategy.value,
            "backend": self.backend,
            "app_name": self.app_name,
        }
