"""Reconciles Recording resources against a remote JFR profiling agent."""

from jfr_reconciler.reconciler import ReconcileResult, Reconciler
from jfr_reconciler.state_machine import Phase, RecordingState

__all__ = ["Phase", "ReconcileResult", "Reconciler", "RecordingState"]
__version__ = "0.1.0"
