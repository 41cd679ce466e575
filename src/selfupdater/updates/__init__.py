"""
Update mechanism for the self-updater.

This package implements:
- Revision source abstraction and the git implementation
- Process controllers (supervisor, touch, spawn)
- Heartbeat-based liveness monitoring
- State machine orchestrating pull, restart, verdict and rollback
"""

from selfupdater.updates.controllers import (
    ProcessController,
    RestartStrategy,
    create_controller,
    default_reexec_command,
    detect_strategy,
)
from selfupdater.updates.git_source import GitRevisionSource
from selfupdater.updates.liveness import HealthCheckResult, LivenessMonitor
from selfupdater.updates.revision_source import Revision, RevisionSource
from selfupdater.updates.spawn_restart import (
    SpawnExitController,
    SpawnObserveController,
)
from selfupdater.updates.state_machine import (
    ChangeClass,
    CycleOutcome,
    SupervisorState,
    UpdateCycle,
    UpdateState,
    UpdateStateMachine,
)
from selfupdater.updates.supervisor_restart import SupervisorController
from selfupdater.updates.touch_restart import TouchController

__all__ = [
    # Revision source
    "Revision",
    "RevisionSource",
    "GitRevisionSource",
    # Controllers
    "ProcessController",
    "RestartStrategy",
    "SupervisorController",
    "TouchController",
    "SpawnExitController",
    "SpawnObserveController",
    "create_controller",
    "default_reexec_command",
    "detect_strategy",
    # Liveness
    "LivenessMonitor",
    "HealthCheckResult",
    # State machine
    "UpdateStateMachine",
    "UpdateState",
    "ChangeClass",
    "CycleOutcome",
    "UpdateCycle",
    "SupervisorState",
]
