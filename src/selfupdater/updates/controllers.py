"""
Process controller abstraction.

A process controller brings the supervised application (back) up under the
code currently checked out. The restart strategy is chosen once at startup,
from configuration or by sniffing the process environment, and injected into
the update state machine.
"""

from __future__ import annotations

import os
import sys
from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from selfupdater.logging import get_logger

if TYPE_CHECKING:
    from selfupdater.config import UpdaterConfig

logger = get_logger(__name__)

# Environment variables that reveal the process is running under pm2
PM2_ENV_MARKERS = ("pm_id", "PM2_HOME")

# Set by systemd for every service it starts
SYSTEMD_ENV_MARKER = "INVOCATION_ID"


class RestartStrategy(str, Enum):
    """
    Ways of replacing the running application.

    - supervisor: ask pm2/systemd to restart the application by name
    - touch: bump the mtime of a file watched by an auto-restarter
    - spawn_exit: spawn a detached successor, then exit this process
    - spawn_observe: spawn a child and keep supervising it
    """

    SUPERVISOR = "supervisor"
    TOUCH = "touch"
    SPAWN_EXIT = "spawn_exit"
    SPAWN_OBSERVE = "spawn_observe"


class ProcessController(ABC):
    """
    Abstract base class for process controllers.

    Concrete implementations include:
    - SupervisorController: pm2 / systemd restart by application name
    - TouchController: touch-triggered restart
    - SpawnExitController / SpawnObserveController: direct spawn

    restart() is fire-and-forget: it returns once the restart has been
    issued, and reports failure by raising RestartError.
    """

    strategy: RestartStrategy

    async def start(self) -> None:
        """Bring the application up when the updater starts. No-op by default."""

    @abstractmethod
    async def restart(self) -> None:
        """
        Restart the application under the current code.

        Raises:
            RestartError: If the restart could not be issued.
        """

    async def stop(self) -> None:
        """Release resources when the updater stops. No-op by default."""

    def describe(self) -> dict[str, str]:
        """Return a short description for status output."""
        return {"strategy": self.strategy.value}


def detect_strategy(
    config: UpdaterConfig,
    environ: Mapping[str, str] | None = None,
) -> tuple[RestartStrategy, str]:
    """
    Select the restart strategy.

    An explicit strategy in the configuration wins. With "auto", pm2 is
    detected from its environment markers and systemd from INVOCATION_ID
    (only when a supervisor name is configured); otherwise the application
    is spawned and observed directly.

    Args:
        config: Updater configuration.
        environ: Process environment (os.environ if None).

    Returns:
        Tuple of (strategy, supervisor backend).
    """
    env = os.environ if environ is None else environ

    if config.strategy != "auto":
        return RestartStrategy(config.strategy), config.supervisor_backend

    if any(marker in env for marker in PM2_ENV_MARKERS):
        return RestartStrategy.SUPERVISOR, "pm2"

    if SYSTEMD_ENV_MARKER in env and config.supervisor_name:
        return RestartStrategy.SUPERVISOR, "systemd"

    return RestartStrategy.SPAWN_OBSERVE, config.supervisor_backend


def default_reexec_command(argv: list[str] | None = None) -> list[str]:
    """
    Command line that starts another instance of this process.

    Under ``python -m selfupdater`` argv[0] is the package's __main__.py;
    running that file as a script would put the package directory on
    sys.path, where selfupdater/logging.py shadows the stdlib module. The
    successor is started with ``-m`` instead.
    """
    argv = sys.argv if argv is None else argv
    if argv and Path(argv[0]).name == "__main__.py":
        return [sys.executable, "-m", "selfupdater", *argv[1:]]
    return [sys.executable, *argv]


def create_controller(
    config: UpdaterConfig,
    environ: Mapping[str, str] | None = None,
) -> ProcessController:
    """
    Build the process controller for the configured/detected strategy.

    Args:
        config: Updater configuration.
        environ: Process environment (os.environ if None).

    Returns:
        A ProcessController instance.
    """
    from selfupdater.updates.spawn_restart import (
        SpawnExitController,
        SpawnObserveController,
    )
    from selfupdater.updates.supervisor_restart import SupervisorController
    from selfupdater.updates.touch_restart import TouchController

    strategy, backend = detect_strategy(config, environ)
    repo_dir = Path(config.repo_dir)

    controller: ProcessController
    if strategy == RestartStrategy.SUPERVISOR:
        controller = SupervisorController(
            app_name=config.supervisor_name or repo_dir.resolve().name,
            backend=backend,
            timeout=config.command_timeout_seconds,
        )
    elif strategy == RestartStrategy.TOUCH:
        controller = TouchController(
            config.resolve_path(config.touch_file or config.main_file)
        )
    elif strategy == RestartStrategy.SPAWN_EXIT:
        controller = SpawnExitController(
            command=config.spawn_command or default_reexec_command(),
            cwd=repo_dir,
            log_dir=config.spawn_log_dir,
        )
    else:
        controller = SpawnObserveController(
            command=config.spawn_command or [sys.executable, config.main_file],
            cwd=repo_dir,
            log_dir=config.spawn_log_dir,
            stop_timeout=config.stop_timeout_seconds,
        )

    logger.info(
        f"Using restart strategy: {strategy.value}",
        extra=controller.describe(),
    )
    return controller
