"""
Update state machine for the self-updating supervisor.

This module implements the UpdateStateMachine class that polls the revision
source, applies new revisions through the process controller, judges the
result from the heartbeat after a grace window and rolls back on failure.

State machine states:
- idle: Waiting for the next tick
- pulling: Fetching upstream changes
- diffing: Classifying the changed paths of a new revision
- skipped: Change only touched the updater's own files; absorbed silently
- restarting: Restart issued through the process controller
- awaiting_verdict: Grace window running before the health verdict
- healthy: New revision accepted
- rolling_back: Resetting to the backup revision and restarting

Invariants:
- backup_revision is overwritten only when an update is accepted for
  rollout, never during rollback.
- At most one verdict is pending. A tick that finds one still pulls but
  never starts a second restart.
- Tick bodies and the verdict never interleave (one asyncio.Lock).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from selfupdater.errors import (
    DiffError,
    FailedPreconditionError,
    InvalidArgumentError,
    PullError,
    ResetError,
    RestartError,
    UpdaterError,
)
from selfupdater.logging import get_logger

if TYPE_CHECKING:
    from selfupdater.updates.controllers import ProcessController
    from selfupdater.updates.liveness import LivenessMonitor
    from selfupdater.updates.revision_source import Revision, RevisionSource

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL_MS = 10000
DEFAULT_GRACE_PERIOD_MS = 20000

# Oldest rejected revisions are forgotten beyond this many
MAX_REJECTED_REVISIONS = 50


class UpdateState(str, Enum):
    """
    States for the update state machine.

    State transitions:
    - idle → pulling (tick)
    - idle → awaiting_verdict (verdict resumed after a handoff)
    - idle → rolling_back (retry of a failed rollback)
    - pulling → idle (pull failed, unchanged, deferred, rejected)
    - pulling → diffing (new revision found)
    - diffing → idle (diff failed)
    - diffing → skipped (updater-only change)
    - diffing → restarting (update accepted)
    - skipped → idle
    - restarting → awaiting_verdict
    - awaiting_verdict → healthy | rolling_back
    - healthy → idle
    - rolling_back → idle
    """

    IDLE = "idle"
    PULLING = "pulling"
    DIFFING = "diffing"
    SKIPPED = "skipped"
    RESTARTING = "restarting"
    AWAITING_VERDICT = "awaiting_verdict"
    HEALTHY = "healthy"
    ROLLING_BACK = "rolling_back"


_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {
        UpdateState.PULLING,
        UpdateState.AWAITING_VERDICT,
        UpdateState.ROLLING_BACK,
    },
    UpdateState.PULLING: {UpdateState.IDLE, UpdateState.DIFFING},
    UpdateState.DIFFING: {
        UpdateState.IDLE,
        UpdateState.SKIPPED,
        UpdateState.RESTARTING,
    },
    UpdateState.SKIPPED: {UpdateState.IDLE},
    UpdateState.RESTARTING: {UpdateState.AWAITING_VERDICT},
    UpdateState.AWAITING_VERDICT: {UpdateState.HEALTHY, UpdateState.ROLLING_BACK},
    UpdateState.HEALTHY: {UpdateState.IDLE},
    UpdateState.ROLLING_BACK: {UpdateState.IDLE},
}


class ChangeClass(str, Enum):
    """Decision for a newly detected revision."""

    APPLY = "apply"
    SKIP = "skip"


class CycleOutcome(str, Enum):
    """How a single tick ended."""

    PULL_FAILED = "pull_failed"
    UNCHANGED = "unchanged"
    DEFERRED = "deferred"
    DIFF_FAILED = "diff_failed"
    SKIPPED = "skipped"
    APPLIED = "applied"
    REJECTED = "rejected"
    ROLLBACK_RETRIED = "rollback_retried"


class UpdateCycle(BaseModel):
    """Record of one poll iteration. Never persisted."""

    previous_revision: str | None = Field(
        default=None,
        description="Revision believed to be running when the tick started",
    )
    candidate_revision: str | None = Field(
        default=None,
        description="Newly detected revision, if any",
    )
    changed_paths: set[str] = Field(
        default_factory=set,
        description="Paths changed between previous and candidate",
    )
    outcome: CycleOutcome = Field(
        default=CycleOutcome.UNCHANGED,
        description="How the tick ended",
    )
    error: str | None = Field(
        default=None,
        description="Failure message when the tick aborted",
    )


class SupervisorState(BaseModel):
    """Long-lived state owned by the state machine."""

    state: UpdateState = Field(
        default=UpdateState.IDLE,
        description="Current state machine state",
    )
    current_revision: str | None = Field(
        default=None,
        description="Revision believed to be running",
    )
    backup_revision: str | None = Field(
        default=None,
        description="Revision to roll back to if the next update fails",
    )
    rejected_revisions: list[str] = Field(
        default_factory=list,
        description="Revisions that failed their health verdict",
    )
    rollback_pending: bool = Field(
        default=False,
        description="A rollback reset failed and must be retried",
    )
    last_transition_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp of last state transition",
    )


class PendingVerdict(BaseModel):
    """A restart whose health verdict has not been given yet."""

    candidate_revision: str
    backup_revision: str | None = None
    restarted_at: str


class PersistedState(BaseModel):
    """
    State saved to disk so a successor process can finish a verdict.

    After an exit-after-spawn handoff the new process instance loads this,
    resumes the pending verdict and keeps avoiding rejected revisions.
    """

    pending_verdict: PendingVerdict | None = None
    rejected_revisions: list[str] = Field(default_factory=list)


def is_self_path(path: str, self_paths: set[str]) -> bool:
    """
    Return True if a changed path belongs to the updater itself.

    A path matches when it equals one of the own paths exactly, or lies
    beneath one of them when that own path is a directory.
    """
    candidate = PurePosixPath(path)
    for own in self_paths:
        own_path = PurePosixPath(own)
        if candidate == own_path or own_path in candidate.parents:
            return True
    return False


class UpdateStateMachine:
    """
    Orchestrates polling, restart, health verdict and rollback.

    Attributes:
        state: Current state machine state.
        supervisor_state: Long-lived revision bookkeeping.
        has_pending_verdict: Whether a grace timer is outstanding.
    """

    def __init__(
        self,
        revision_source: RevisionSource,
        controller: ProcessController,
        liveness: LivenessMonitor,
        branch: str = "main",
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
        self_paths: set[str] | list[str] | None = None,
        state_file: Path | str | None = None,
    ) -> None:
        """
        Initialize the UpdateStateMachine.

        Args:
            revision_source: Source of revisions (git).
            controller: Process controller for the chosen restart strategy.
            liveness: Heartbeat-based health judge.
            branch: Branch pulled on every tick.
            check_interval_ms: Poll interval in milliseconds.
            grace_period_ms: Wait between restart and verdict.
            self_paths: Repository paths of the updater's own source.
            state_file: Path of the persisted state file (None disables
                persistence).
        """
        self._source = revision_source
        self._controller = controller
        self._liveness = liveness
        self._branch = branch
        self._check_interval = check_interval_ms / 1000
        self._grace_period = grace_period_ms / 1000
        self._self_paths = {p.strip("/") for p in (self_paths or []) if p.strip("/")}
        self._state_file = Path(state_file) if state_file else None

        self._state = SupervisorState()
        self._pending: PendingVerdict | None = None
        self._verdict_task: asyncio.Task[None] | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._started = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> UpdateState:
        """Get the current state."""
        return self._state.state

    @property
    def supervisor_state(self) -> SupervisorState:
        """Get the revision bookkeeping."""
        return self._state

    @property
    def current_revision(self) -> str | None:
        return self._state.current_revision

    @property
    def backup_revision(self) -> str | None:
        return self._state.backup_revision

    @property
    def has_pending_verdict(self) -> bool:
        """Whether a grace timer is scheduled and has not fired yet."""
        return self._verdict_task is not None and not self._verdict_task.done()

    # ------------------------------------------------------------------
    # State transitions and persistence
    # ------------------------------------------------------------------

    def _transition_to(self, new_state: UpdateState) -> None:
        """
        Transition to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self.state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.debug(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "current_revision": self._state.current_revision,
            },
        )

        self._state.state = new_state
        self._state.last_transition_at = datetime.now(UTC).isoformat()

    def _save_state(self) -> None:
        """Write the pending verdict and rejected revisions to disk."""
        if self._state_file is None:
            return

        persisted = PersistedState(
            pending_verdict=self._pending,
            rejected_revisions=self._state.rejected_revisions,
        )
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)

            # Atomic write
            temp_file = self._state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(persisted.model_dump(), f, indent=2)
            temp_file.replace(self._state_file)
        except OSError as e:
            logger.warning(f"Failed to save updater state: {e}")

    def _load_state(self) -> PersistedState:
        """Load persisted state, falling back to an empty one."""
        if self._state_file is None or not self._state_file.exists():
            return PersistedState()
        try:
            with open(self._state_file) as f:
                return PersistedState(**json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load updater state: {e}")
            return PersistedState()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Probe the current revision and restore persisted state.

        A persisted pending verdict whose candidate is the checked-out
        revision is resumed with its original backup; any other pending
        record is stale and dropped.
        """
        if self._started:
            return
        self._started = True

        revision = await self._source.current_revision()
        self._state.current_revision = revision
        self._state.backup_revision = revision

        persisted = self._load_state()
        self._state.rejected_revisions = list(
            persisted.rejected_revisions[-MAX_REJECTED_REVISIONS:]
        )

        pending = persisted.pending_verdict
        if pending is not None and revision is not None:
            if pending.candidate_revision == revision:
                logger.info(
                    f"Resuming health verdict for {revision}",
                    extra={"backup_revision": pending.backup_revision},
                )
                self._state.backup_revision = pending.backup_revision or revision
                self._pending = pending
                self._transition_to(UpdateState.AWAITING_VERDICT)
                self._schedule_verdict()
            else:
                logger.info(
                    "Discarding stale pending verdict",
                    extra={"candidate_revision": pending.candidate_revision},
                )
                self._save_state()

        try:
            await self._controller.start()
        except RestartError as e:
            logger.error(f"Could not start application: {e.message}", extra=e.details)

        logger.info(
            f"Watching '{self._branch}' for changes every {self._check_interval:g}s",
            extra={
                "current_revision": revision,
                **self._controller.describe(),
            },
        )

    async def run(self) -> None:
        """Run the poll loop until stop() is called."""
        await self.start()
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except UpdaterError as e:
                logger.error(f"Update cycle failed: {e.message}", extra=e.details)
            except Exception:
                logger.exception("Unexpected error in update cycle")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._check_interval
                )

    async def stop(self) -> None:
        """Stop polling and cancel a verdict that has not fired yet."""
        self._stop_event.set()
        task = self._verdict_task
        if task is not None and not task.done():
            async with self._cycle_lock:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._controller.stop()

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def tick(self) -> UpdateCycle:
        """
        Run one poll cycle.

        Returns:
            UpdateCycle describing what happened.
        """
        async with self._cycle_lock:
            return await self._tick()

    async def _tick(self) -> UpdateCycle:
        previous = self._state.current_revision
        cycle = UpdateCycle(previous_revision=previous)

        if self._state.rollback_pending and not self.has_pending_verdict:
            await self.rollback()
            cycle.outcome = CycleOutcome.ROLLBACK_RETRIED
            return cycle

        verdict_pending = self.has_pending_verdict
        if not verdict_pending:
            self._transition_to(UpdateState.PULLING)

        try:
            if not await self.pull():
                cycle.outcome = CycleOutcome.PULL_FAILED
                cycle.error = "pull failed"
                return cycle

            candidate = await self.detect_change(previous)
            if candidate is None:
                cycle.outcome = CycleOutcome.UNCHANGED
                return cycle

            cycle.candidate_revision = candidate

            if verdict_pending:
                logger.info(
                    f"New revision {candidate} deferred until the pending verdict",
                    extra={"candidate_revision": candidate},
                )
                cycle.outcome = CycleOutcome.DEFERRED
                return cycle

            if candidate in self._state.rejected_revisions:
                await self._revert_rejected(candidate, previous)
                cycle.outcome = CycleOutcome.REJECTED
                return cycle

            logger.info(
                f"Update detected: {previous} -> {candidate}",
                extra={"previous_revision": previous, "candidate_revision": candidate},
            )

            self._transition_to(UpdateState.DIFFING)
            try:
                decision, changed = await self.classify_change(previous, candidate)
            except DiffError as e:
                logger.error(f"Diff failed: {e.message}", extra=e.details)
                cycle.outcome = CycleOutcome.DIFF_FAILED
                cycle.error = e.message
                return cycle

            cycle.changed_paths = changed

            if decision == ChangeClass.SKIP:
                self._transition_to(UpdateState.SKIPPED)
                self._state.current_revision = candidate
                logger.info(
                    f"Only updater files changed; absorbed {candidate} without restart",
                    extra={"changed_paths": sorted(changed)},
                )
                cycle.outcome = CycleOutcome.SKIPPED
                return cycle

            await self.apply_update(candidate)
            cycle.outcome = CycleOutcome.APPLIED
            return cycle
        finally:
            if self.state in (
                UpdateState.PULLING,
                UpdateState.DIFFING,
                UpdateState.SKIPPED,
            ):
                self._transition_to(UpdateState.IDLE)

    async def pull(self) -> bool:
        """
        Pull the watched branch.

        Returns:
            True on success, False if the pull failed (logged).
        """
        try:
            await self._source.pull(self._branch)
        except PullError as e:
            logger.error(f"Git pull failed: {e.message}", extra=e.details)
            return False
        return True

    async def detect_change(self, previous: Revision | None) -> Revision | None:
        """
        Compare HEAD with the previous revision.

        Returns:
            The new revision, or None if unchanged or unreadable.
        """
        head = await self._source.current_revision()
        if head is None or head == previous:
            return None
        return head

    async def classify_change(
        self,
        previous: Revision | None,
        candidate: Revision,
    ) -> tuple[ChangeClass, set[str]]:
        """
        Decide whether a new revision needs a restart.

        SKIP iff every changed path is one of the updater's own paths. With
        no previous revision there is nothing to diff against; the
        candidate is adopted as the first observed state.

        Returns:
            Tuple of (decision, changed paths).

        Raises:
            DiffError: If the changed paths cannot be listed.
        """
        if previous is None:
            logger.info(f"No previous revision; adopting {candidate}")
            return ChangeClass.SKIP, set()

        changed = await self._source.changed_paths(previous, candidate)
        if all(is_self_path(path, self._self_paths) for path in changed):
            return ChangeClass.SKIP, changed
        return ChangeClass.APPLY, changed

    async def _revert_rejected(
        self, candidate: Revision, previous: Revision | None
    ) -> None:
        """Undo a re-pull of a revision that already failed verification."""
        logger.warning(
            f"Revision {candidate} previously failed health checks; not restarting",
            extra={"candidate_revision": candidate},
        )
        if previous is None:
            return
        try:
            await self._source.reset_hard(previous)
        except ResetError as e:
            logger.error(f"Could not revert rejected revision: {e.message}", extra=e.details)

    # ------------------------------------------------------------------
    # Update, verdict, rollback
    # ------------------------------------------------------------------

    async def apply_update(self, candidate: Revision) -> None:
        """
        Roll out a new revision.

        Sets the backup to the current revision, records the pending
        verdict, restarts the application and schedules the verdict after
        the grace window. A restart failure is logged; the verdict still
        runs and decides, so the machine always reaches awaiting_verdict.
        """
        if self.has_pending_verdict:
            raise FailedPreconditionError(
                "Cannot apply an update while a verdict is pending",
                details={"candidate_revision": candidate},
            )

        self._transition_to(UpdateState.RESTARTING)
        self._state.backup_revision = self._state.current_revision
        self._state.current_revision = candidate
        self._pending = PendingVerdict(
            candidate_revision=candidate,
            backup_revision=self._state.backup_revision,
            restarted_at=datetime.now(UTC).isoformat(),
        )
        self._save_state()

        try:
            await self._controller.restart()
        except RestartError as e:
            logger.error(f"Restart failed: {e.message}", extra=e.details)
        except Exception:
            logger.exception("Unexpected error while restarting application")

        self._transition_to(UpdateState.AWAITING_VERDICT)
        self._schedule_verdict()
        logger.info(
            f"Waiting {self._grace_period:g}s for health check of {candidate}",
            extra={"backup_revision": self._state.backup_revision},
        )

    def _schedule_verdict(self) -> None:
        """
        Start the one-shot grace timer.

        Raises:
            FailedPreconditionError: If a verdict is already pending.
        """
        if self.has_pending_verdict:
            raise FailedPreconditionError(
                "A health verdict is already pending",
                details={"current_revision": self._state.current_revision},
            )
        self._verdict_task = asyncio.create_task(self._verdict_after_grace())

    def _cancel_verdict_timer(self) -> None:
        """Drop the grace timer when the verdict is given by a direct call."""
        task = self._verdict_task
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        self._verdict_task = None

    async def wait_for_verdict(self) -> None:
        """Block until the pending verdict (if any) has been given."""
        task = self._verdict_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _verdict_after_grace(self) -> None:
        await asyncio.sleep(self._grace_period)
        async with self._cycle_lock:
            try:
                await self.verdict()
            except UpdaterError as e:
                logger.error(f"Health verdict failed: {e.message}", extra=e.details)
            except Exception:
                logger.exception("Unexpected error in health verdict")

    async def verdict(self) -> bool:
        """
        Judge the restarted revision.

        Returns:
            True if healthy; False if a rollback was triggered.
        """
        self._cancel_verdict_timer()
        result = self._liveness.check()

        if result.passed:
            self._transition_to(UpdateState.HEALTHY)
            logger.info(
                f"App is healthy. Running revision {self._state.current_revision}",
                extra=result.details,
            )
            self._pending = None
            self._forget_rejected(self._state.current_revision)
            self._save_state()
            self._transition_to(UpdateState.IDLE)
            return True

        logger.error(
            f"App failed health check, rolling back: {result.message}",
            extra=result.details,
        )
        self._transition_to(UpdateState.ROLLING_BACK)
        await self._rollback()
        return False

    async def rollback(self) -> None:
        """Reset to the backup revision and restart. Not re-verified."""
        self._cancel_verdict_timer()
        self._transition_to(UpdateState.ROLLING_BACK)
        await self._rollback()

    async def _rollback(self) -> None:
        backup = self._state.backup_revision
        failed = self._state.current_revision

        if backup is None:
            logger.error("No backup revision available; cannot roll back")
            self._state.rollback_pending = False
            self._pending = None
            self._save_state()
            self._transition_to(UpdateState.IDLE)
            return

        try:
            await self._source.reset_hard(backup)
        except ResetError as e:
            logger.error(
                f"Rollback reset failed, retrying next tick: {e.message}",
                extra=e.details,
            )
            self._state.rollback_pending = True
            self._transition_to(UpdateState.IDLE)
            return
        except Exception:
            logger.exception("Unexpected error during rollback reset, retrying next tick")
            self._state.rollback_pending = True
            self._transition_to(UpdateState.IDLE)
            return

        self._state.rollback_pending = False
        self._state.current_revision = backup
        if failed is not None and failed != backup:
            self._remember_rejected(failed)
        self._pending = None
        self._save_state()
        self._transition_to(UpdateState.IDLE)
        logger.info(
            f"Rolled back to previous revision {backup}",
            extra={"rejected_revision": failed},
        )

        try:
            await self._controller.restart()
        except RestartError as e:
            logger.critical(
                f"Restart after rollback failed; application may be down: {e.message}",
                extra=e.details,
            )
        except Exception:
            logger.critical(
                "Restart after rollback failed; application may be down",
                exc_info=True,
            )

    def _remember_rejected(self, revision: Revision) -> None:
        rejected = self._state.rejected_revisions
        if revision in rejected:
            return
        rejected.append(revision)
        del rejected[:-MAX_REJECTED_REVISIONS]

    def _forget_rejected(self, revision: Revision | None) -> None:
        """A revision that later passes its verdict is no longer avoided."""
        if revision in self._state.rejected_revisions:
            self._state.rejected_revisions.remove(revision)

    def get_status(self) -> dict[str, Any]:
        """
        Get the current status of the state machine.

        Returns:
            Dictionary with current status.
        """
        return {
            "state": self.state.value,
            "current_revision": self._state.current_revision,
            "backup_revision": self._state.backup_revision,
            "pending_verdict": self._pending.model_dump() if self._pending else None,
            "rejected_revisions": list(self._state.rejected_revisions),
            "rollback_pending": self._state.rollback_pending,
            "self_paths": sorted(self._self_paths),
            "last_transition_at": self._state.last_transition_at,
            **self._controller.describe(),
        }
