"""
Updater service wiring.

Builds the revision source, process controller, liveness monitor and update
state machine from an AppConfig and runs them until a shutdown signal.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import selfupdater
from selfupdater.config import AppConfig, UpdaterConfig
from selfupdater.logging import get_logger
from selfupdater.updates.controllers import ProcessController, create_controller
from selfupdater.updates.git_source import GitRevisionSource
from selfupdater.updates.liveness import LivenessMonitor
from selfupdater.updates.revision_source import RevisionSource
from selfupdater.updates.state_machine import UpdateStateMachine

logger = get_logger(__name__)


def default_self_paths(config: UpdaterConfig) -> list[str]:
    """
    Repository paths that hold the updater's own source.

    The installed package directory counts when it lies inside the watched
    repository; configured self_paths are always included.

    Returns:
        Sorted list of POSIX-style paths relative to repo_dir.
    """
    paths = {p.strip("/") for p in config.self_paths if p.strip("/")}

    repo_dir = Path(config.repo_dir).resolve()
    package_dir = Path(selfupdater.__file__).resolve().parent
    try:
        paths.add(package_dir.relative_to(repo_dir).as_posix())
    except ValueError:
        # Installed outside the working copy
        pass

    paths.discard(".")
    return sorted(paths)


class UpdaterService:
    """
    Owns the components of one updater instance.

    Attributes:
        config: Application configuration.
        source: Revision source (git).
        controller: Process controller for the chosen restart strategy.
        liveness: Heartbeat monitor.
        state_machine: The update state machine.
    """

    def __init__(
        self,
        config: AppConfig,
        source: RevisionSource | None = None,
        controller: ProcessController | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        updater = config.updater

        self.source = source or GitRevisionSource(
            repo_dir=updater.repo_dir,
            remote=updater.remote,
            timeout=updater.command_timeout_seconds,
        )
        self.controller = controller or create_controller(updater, environ)
        self.liveness = LivenessMonitor(
            health_file=updater.resolve_path(updater.health_file),
            timeout_ms=updater.health_timeout_ms,
        )
        self.state_machine = UpdateStateMachine(
            revision_source=self.source,
            controller=self.controller,
            liveness=self.liveness,
            branch=updater.watch_branch,
            check_interval_ms=updater.check_interval_ms,
            grace_period_ms=updater.grace_period_ms,
            self_paths=default_self_paths(updater),
            state_file=(
                updater.resolve_path(updater.state_file) if updater.state_file else None
            ),
        )

    async def run(self) -> None:
        """Run the poll loop until stop() is called."""
        logger.info(
            "Starting self-updater",
            extra={
                "repo_dir": str(Path(self.config.updater.repo_dir).resolve()),
                "branch": self.config.updater.watch_branch,
                "pid": os.getpid(),
            },
        )
        await self.state_machine.run()

    async def stop(self) -> None:
        """Stop polling and release the controller."""
        await self.state_machine.stop()
        logger.info("Self-updater stopped")

    def get_status(self) -> dict[str, Any]:
        return self.state_machine.get_status()


async def run_updater(config: AppConfig) -> None:
    """
    Run the updater with signal setup and graceful shutdown.

    Args:
        config: Application configuration.
    """
    service = UpdaterService(config)

    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task[None]] = set()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        task = asyncio.create_task(service.stop())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    installed: list[int] = []
    try:
        import signal

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)
            installed.append(sig)
    except (ValueError, NotImplementedError):
        # Signal handling not supported on this platform
        pass

    try:
        await service.run()
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
