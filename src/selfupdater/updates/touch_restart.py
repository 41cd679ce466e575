"""
Touch-triggered restart.

An external auto-restarter (nodemon, watchmedo auto-restart, uvicorn
--reload, ...) watches a file; bumping its modification time makes it
restart the application.
"""

from __future__ import annotations

import os
from pathlib import Path

from selfupdater.errors import RestartError
from selfupdater.logging import get_logger
from selfupdater.updates.controllers import ProcessController, RestartStrategy

logger = get_logger(__name__)


class TouchController(ProcessController):
    """Restarts the application by touching a watched file."""

    strategy = RestartStrategy.TOUCH

    def __init__(self, watched_file: Path | str) -> None:
        """
        Initialize the TouchController.

        Args:
            watched_file: File observed by the auto-restarter.
        """
        self.watched_file = Path(watched_file)

    async def restart(self) -> None:
        """Update the watched file's mtime, creating it if missing."""
        try:
            self.watched_file.touch(exist_ok=True)
            os.utime(self.watched_file, None)
        except OSError as e:
            raise RestartError(
                f"Could not touch {self.watched_file}: {e}",
                details={"path": str(self.watched_file)},
            ) from e

        logger.info(f"Touched {self.watched_file} to trigger restart")

    def describe(self) -> dict[str, str]:
        return {"strategy": self.strategy.value, "watched_file": str(self.watched_file)}
