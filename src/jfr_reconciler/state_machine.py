"""Recording states, reconciliation phases and the pure decisions between them.

Nothing in this module touches the store or the remote agent. The reconciler
feeds an Observation in as it learns things and asks where it should be next.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from jfr_reconciler.errors import RecordingStateError

logger = logging.getLogger("reconciler.phase")


class RecordingState(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


TERMINAL_STATES = frozenset({RecordingState.STOPPED})


def project_state(raw_state: str) -> RecordingState:
    """Map a state string reported by the agent onto RecordingState.

    Raises:
        RecordingStateError: for anything outside the four known values.
    """
    for state in RecordingState:
        if raw_state == state.value:
            return state
    raise RecordingStateError(raw_state)


def is_terminal(state: Optional[RecordingState]) -> bool:
    return state in TERMINAL_STATES


class Phase(str, Enum):
    AWAITING_HOST = "AWAITING_HOST"
    AWAITING_TARGET = "AWAITING_TARGET"
    DELETING = "DELETING"
    SYNCING = "SYNCING"
    ARCHIVING = "ARCHIVING"
    SETTLED = "SETTLED"


# Allowed advances within one invocation. An invocation may end in any phase.
PHASE_EDGES: Dict[Optional[Phase], FrozenSet[Phase]] = {
    None: frozenset({Phase.AWAITING_HOST}),
    Phase.AWAITING_HOST: frozenset({Phase.AWAITING_TARGET, Phase.DELETING, Phase.SETTLED}),
    Phase.AWAITING_TARGET: frozenset({Phase.SYNCING, Phase.ARCHIVING, Phase.SETTLED}),
    Phase.DELETING: frozenset({Phase.SETTLED}),
    Phase.SYNCING: frozenset({Phase.ARCHIVING, Phase.SETTLED}),
    # A re-observed remote session may leave STOPPED again (same name reused).
    Phase.ARCHIVING: frozenset({Phase.SYNCING, Phase.SETTLED}),
    Phase.SETTLED: frozenset(),
}


def can_transition(from_phase: Optional[Phase], to_phase: Phase) -> bool:
    """Validate a phase advance.

    Staying in the same phase is always allowed.

    Raises:
        ValueError: If the edge is not in PHASE_EDGES.
    """
    if from_phase == to_phase:
        return True
    allowed = PHASE_EDGES.get(from_phase, frozenset())
    if to_phase not in allowed:
        from_key = "null" if from_phase is None else from_phase.value
        raise ValueError(f"Phase transition {from_key} → {to_phase.value} not allowed")
    return True


@dataclass
class Observation:
    """What one invocation knows so far. None means not looked at yet."""

    host_found: bool = False
    resource_found: Optional[bool] = None
    deleting: bool = False
    has_finalizer: bool = False
    target_found: Optional[bool] = None
    target_ready: Optional[bool] = None
    endpoint_live: Optional[bool] = None
    state: Optional[RecordingState] = None
    archive_requested: bool = False
    download_url: Optional[str] = None


def is_settled(obs: Observation) -> bool:
    """A stopped recording whose archive request (if any) is satisfied."""
    if obs.state is not RecordingState.STOPPED:
        return False
    return not obs.archive_requested or obs.download_url is not None


def next_phase(obs: Observation) -> Phase:
    if not obs.host_found:
        return Phase.AWAITING_HOST
    if obs.resource_found is None:
        return Phase.AWAITING_HOST
    if not obs.resource_found:
        return Phase.SETTLED
    if obs.deleting:
        return Phase.DELETING if obs.has_finalizer else Phase.SETTLED
    if obs.target_found is False:
        return Phase.SETTLED
    if not obs.target_found or not obs.target_ready:
        return Phase.AWAITING_TARGET
    if is_settled(obs):
        return Phase.SETTLED
    if should_archive(obs.archive_requested, obs.download_url, obs.state):
        return Phase.ARCHIVING
    return Phase.SYNCING


class DeletionPlan(str, Enum):
    AWAIT_TARGET = "AWAIT_TARGET"
    SKIP_REMOTE = "SKIP_REMOTE"
    CLEAN_REMOTE = "CLEAN_REMOTE"


def deletion_plan(obs: Observation) -> DeletionPlan:
    """Decide how a deleting Recording with a finalizer gets unwound.

    A missing target or a target with no live instances leaves nothing we can
    reach, so the finalizer is released without remote cleanup.
    """
    if obs.target_found is False:
        return DeletionPlan.SKIP_REMOTE
    if not obs.target_ready:
        return DeletionPlan.AWAIT_TARGET
    if obs.endpoint_live is False:
        return DeletionPlan.SKIP_REMOTE
    return DeletionPlan.CLEAN_REMOTE


class CreationAction(str, Enum):
    START_CONTINUOUS = "START_CONTINUOUS"
    START_TIMED = "START_TIMED"


def creation_action(duration: datetime.timedelta) -> CreationAction:
    if duration == datetime.timedelta(0):
        return CreationAction.START_CONTINUOUS
    return CreationAction.START_TIMED


def should_stop(requested: Optional[RecordingState], current: Optional[RecordingState]) -> bool:
    if requested is None or current is None:
        return False
    return requested is RecordingState.STOPPED and current not in (
        RecordingState.STOPPED,
        RecordingState.STOPPING,
    )


def should_archive(
    archive: bool,
    download_url: Optional[str],
    state: Optional[RecordingState],
) -> bool:
    return archive and download_url is None and state is RecordingState.STOPPED


def requeue_after(state: Optional[RecordingState], poll_seconds: float) -> Optional[float]:
    """Poll an active recording; a stopped one waits for the next change."""
    if is_terminal(state):
        return None
    return poll_seconds


class PhaseTracker:
    """Records the phase path of one invocation, rejecting illegal advances."""

    def __init__(self, key: str):
        self.key = key
        self.phase: Optional[Phase] = None
        self.path: List[Phase] = []

    def advance(self, obs: Observation) -> Phase:
        target = next_phase(obs)
        can_transition(self.phase, target)
        if target != self.phase:
            logger.debug(f"[{self.key}] phase {self.phase.value if self.phase else 'null'} → {target.value}")
            self.phase = target
            self.path.append(target)
        return target
