"""
Direct spawn restart.

Two named variants with different recovery behaviour:

- SpawnExitController (exit-after-spawn): launch a detached successor and
  exit this process with status 0. The successor is the instance that
  performs the next health verdict, picking it up from the persisted state.
  If the spawn fails the exit is aborted, so the system is never left with
  no running application.
- SpawnObserveController (observe-and-continue): this process stays the
  updater, owns the application as a child process, replaces it on restart
  and logs its exit codes.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from pathlib import Path
from typing import IO, Any

from selfupdater.errors import RestartError
from selfupdater.logging import get_logger
from selfupdater.updates.controllers import ProcessController, RestartStrategy

logger = get_logger(__name__)

STDOUT_LOG_NAME = "app.out.log"
STDERR_LOG_NAME = "app.err.log"


class SpawnController(ProcessController):
    """
    Shared spawning logic for the direct spawn strategies.

    Attributes:
        command: Program and arguments to launch.
        cwd: Working directory of the child.
        log_dir: Directory receiving the child's stdout/stderr, or None to
            inherit this process's streams.
    """

    def __init__(
        self,
        command: list[str],
        cwd: Path | str = ".",
        log_dir: Path | str | None = None,
    ) -> None:
        if not command:
            raise ValueError("Spawn command must not be empty")
        self.command = list(command)
        self.cwd = Path(cwd)
        self.log_dir = Path(log_dir) if log_dir is not None else None

    def _open_streams(self) -> tuple[IO[bytes] | None, IO[bytes] | None]:
        if self.log_dir is None:
            return None, None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout = open(self.log_dir / STDOUT_LOG_NAME, "ab")
        try:
            stderr = open(self.log_dir / STDERR_LOG_NAME, "ab")
        except OSError:
            stdout.close()
            raise
        return stdout, stderr

    def _detach_kwargs(self) -> dict[str, Any]:
        """Keyword arguments that detach the child from our lifetime."""
        if os.name == "nt":
            return {
                "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP
                | subprocess.DETACHED_PROCESS
            }
        return {"start_new_session": True}

    async def _spawn(self) -> asyncio.subprocess.Process:
        """
        Launch the command as a detached child.

        Raises:
            RestartError: If the process could not be started.
        """
        logger.info("Spawning application", extra={"command": self.command})
        try:
            stdout, stderr = self._open_streams()
        except OSError as e:
            raise RestartError(
                f"Could not open spawn log files: {e}",
                details={"log_dir": str(self.log_dir)},
            ) from e

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                **self._detach_kwargs(),
            )
        except OSError as e:
            raise RestartError(
                f"Could not spawn {self.command[0]}: {e}",
                details={"command": self.command},
            ) from e
        finally:
            # The child holds its own descriptors
            for stream in (stdout, stderr):
                if stream is not None:
                    stream.close()

        logger.info(f"Spawned application with pid {proc.pid}", extra={"pid": proc.pid})
        return proc

    def describe(self) -> dict[str, str]:
        return {"strategy": self.strategy.value, "command": " ".join(self.command)}


class SpawnExitController(SpawnController):
    """Spawns a detached successor, then exits this process (clean handoff)."""

    strategy = RestartStrategy.SPAWN_EXIT

    async def restart(self) -> None:
        """
        Spawn the successor and exit with status 0.

        Raises:
            RestartError: If the spawn failed; the exit is aborted.
            SystemExit: After a successful spawn.
        """
        proc = await self._spawn()
        logger.info(
            "Handing off to spawned successor, exiting",
            extra={"pid": proc.pid},
        )
        raise SystemExit(0)


class SpawnObserveController(SpawnController):
    """
    Owns the application as a child process and keeps supervising it.

    Attributes:
        stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
        last_exit_code: Exit code of the most recently exited child.
    """

    strategy = RestartStrategy.SPAWN_OBSERVE

    def __init__(
        self,
        command: list[str],
        cwd: Path | str = ".",
        log_dir: Path | str | None = None,
        stop_timeout: float = 10.0,
    ) -> None:
        super().__init__(command, cwd=cwd, log_dir=log_dir)
        self.stop_timeout = stop_timeout
        self.last_exit_code: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._watchers: set[asyncio.Task[None]] = set()

    @property
    def pid(self) -> int | None:
        """PID of the running child, if any."""
        if self._process is None or self._process.returncode is not None:
            return None
        return self._process.pid

    async def start(self) -> None:
        """Launch the application."""
        await self._launch()

    async def restart(self) -> None:
        """Terminate the current child and launch a new one."""
        await self._terminate()
        await self._launch()

    async def stop(self) -> None:
        """Terminate the child and wait for its exit to be recorded."""
        await self._terminate()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)

    async def _launch(self) -> None:
        proc = await self._spawn()
        self._process = proc
        task = asyncio.create_task(self._watch(proc))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        """Record the child's exit code once it terminates."""
        returncode = await proc.wait()
        self.last_exit_code = returncode

        if proc is self._process:
            logger.warning(
                f"Application exited unexpectedly with code {returncode}",
                extra={"pid": proc.pid, "returncode": returncode},
            )
            self._process = None
        else:
            logger.info(
                f"Replaced application exited with code {returncode}",
                extra={"pid": proc.pid, "returncode": returncode},
            )

    def _signal(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            raise RestartError(
                f"Failed to signal application: {e}",
                details={"pid": proc.pid, "signal": int(sig)},
            ) from e

    async def _terminate(self) -> None:
        """SIGTERM the child's process group, SIGKILL after stop_timeout."""
        proc = self._process
        self._process = None
        if proc is None or proc.returncode is not None:
            return

        logger.info(f"Stopping application (pid {proc.pid})")
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
        except TimeoutError:
            logger.warning(
                f"Application did not exit within {self.stop_timeout}s; killing",
                extra={"pid": proc.pid},
            )
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            await proc.wait()
