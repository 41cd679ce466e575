"""
Git implementation of the revision source.

All operations shell out to the git CLI through run_command, so each one is
bounded by the configured command timeout. Failures are raised as the
matching UpdaterError subclass and never terminate the updater.
"""

from __future__ import annotations

from pathlib import Path

from selfupdater.errors import DiffError, PullError, ResetError, UnavailableError
from selfupdater.logging import get_logger
from selfupdater.updates.commands import DEFAULT_COMMAND_TIMEOUT, run_command
from selfupdater.updates.revision_source import Revision, RevisionSource

logger = get_logger(__name__)

UP_TO_DATE_MARKERS = ("Already up to date", "Already up-to-date")


class GitRevisionSource(RevisionSource):
    """
    Revision source backed by a git working copy.

    Attributes:
        repo_dir: Path of the working copy.
        remote: Remote pulled from.
        timeout: Timeout for each git invocation in seconds.
    """

    def __init__(
        self,
        repo_dir: Path | str = ".",
        remote: str = "origin",
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        """
        Initialize the GitRevisionSource.

        Args:
            repo_dir: Path of the git working copy.
            remote: Remote to pull from.
            timeout: Timeout for each git invocation in seconds.
        """
        self.repo_dir = Path(repo_dir)
        self.remote = remote
        self.timeout = timeout

    async def _git(self, *args: str) -> tuple[int, str, str]:
        """Run a git subcommand inside the working copy."""
        return await run_command("git", *args, cwd=self.repo_dir, timeout=self.timeout)

    async def current_revision(self) -> Revision | None:
        """Return the hash of HEAD, or None if git cannot report it."""
        try:
            returncode, stdout, stderr = await self._git("rev-parse", "HEAD")
        except UnavailableError as e:
            logger.warning(f"Could not read current revision: {e.message}")
            return None

        if returncode != 0:
            logger.warning(
                "git rev-parse HEAD failed",
                extra={"returncode": returncode, "stderr": stderr.strip()},
            )
            return None

        return stdout.strip() or None

    async def pull(self, branch: str) -> None:
        """Run ``git pull <remote> <branch>``."""
        try:
            returncode, stdout, stderr = await self._git("pull", self.remote, branch)
        except UnavailableError as e:
            raise PullError(
                f"git pull failed: {e.message}",
                details={"remote": self.remote, "branch": branch},
            ) from e

        if returncode != 0:
            raise PullError(
                f"git pull failed: {(stderr or stdout).strip()}",
                details={
                    "remote": self.remote,
                    "branch": branch,
                    "returncode": returncode,
                },
            )

        if not any(marker in stdout for marker in UP_TO_DATE_MARKERS):
            logger.info(
                "Pulled upstream changes",
                extra={"branch": branch, "output": stdout.strip()},
            )

    async def changed_paths(self, from_rev: Revision, to_rev: Revision) -> set[str]:
        """
        Run ``git diff --name-only --no-renames -z <from> <to>``.

        Rename detection is disabled so a moved file reports both its old and
        new path. NUL-separated output keeps non-ASCII paths unquoted.
        """
        try:
            returncode, stdout, stderr = await self._git(
                "diff", "--name-only", "--no-renames", "-z", from_rev, to_rev
            )
        except UnavailableError as e:
            raise DiffError(
                f"git diff failed: {e.message}",
                details={"from": from_rev, "to": to_rev},
            ) from e

        if returncode != 0:
            raise DiffError(
                f"git diff failed: {(stderr or stdout).strip()}",
                details={"from": from_rev, "to": to_rev, "returncode": returncode},
            )

        return {path for path in stdout.split("\0") if path}

    async def reset_hard(self, rev: Revision) -> None:
        """Run ``git reset --hard <rev>``."""
        try:
            returncode, stdout, stderr = await self._git("reset", "--hard", rev)
        except UnavailableError as e:
            raise ResetError(
                f"git reset failed: {e.message}",
                details={"revision": rev},
            ) from e

        if returncode != 0:
            raise ResetError(
                f"git reset failed: {(stderr or stdout).strip()}",
                details={"revision": rev, "returncode": returncode},
            )

        logger.info(f"Working copy reset to {rev}", extra={"revision": rev})
