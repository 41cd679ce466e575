"""
Bounded external command execution.

Every git, pm2 and systemctl invocation goes through run_command so that a
hung subprocess can never stall the update loop: each call carries its own
timeout, and a timeout is reported the same way as a missing binary.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from selfupdater.errors import UnavailableError
from selfupdater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> tuple[int, str, str]:
    """
    Run an external command and capture its output.

    Args:
        *args: Program and arguments.
        cwd: Working directory for the command.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If the program is missing or cannot be started,
            or the command times out. A timed-out process is killed and
            reaped before raising.
    """
    logger.debug("Running command", extra={"command": list(args), "cwd": str(cwd)})

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            f"{args[0]} not available",
            details={"command": list(args)},
        ) from exc
    except OSError as exc:
        # PermissionError on a non-executable binary, EMFILE, EAGAIN
        raise UnavailableError(
            f"{args[0]} could not be started: {exc}",
            details={"command": list(args)},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"{args[0]} command timed out after {timeout}s",
            details={"command": list(args)},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode(errors="replace") if stdout else "",
        stderr.decode(errors="replace") if stderr else "",
    )
