"""Command-line entry point: ``python -m selfupdater`` / ``selfupdater``."""

from __future__ import annotations

import asyncio

import yaml

from selfupdater.config import load_config
from selfupdater.logging import get_logger, setup_logging
from selfupdater.service import run_updater

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """
    Load configuration, configure logging and run the updater.

    Args:
        argv: Command-line arguments (sys.argv[1:] if None).

    Returns:
        Process exit status.
    """
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        setup_logging(level="INFO")
        logger.error(f"Invalid configuration: {e}")
        return 2

    setup_logging(config.logging)

    try:
        asyncio.run(run_updater(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
