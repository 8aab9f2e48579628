"""Exception taxonomy raised by the reconciler and its collaborators."""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures surfaced to the caller of a reconciliation."""


class HostNotFoundError(ReconcileError):
    """No controlling host service exists in the namespace."""


class TargetServiceNotFoundError(ReconcileError):
    """A FlightRecorder points at a service that does not exist."""


class ConflictError(ReconcileError):
    """A write was rejected because the stored generation moved on."""


class SessionError(ReconcileError):
    """A remote operation against the profiling agent failed."""


class RecordingStateError(ReconcileError, ValueError):
    """The remote agent reported a state outside the known enumeration."""

    def __init__(self, raw_state):
        super().__init__(f"Unknown recording state '{raw_state}'")
        self.raw_state = raw_state
