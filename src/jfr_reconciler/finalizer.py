"""Finalizer bookkeeping for Recordings.

The finalizer keeps a Recording in the store until its remote session has
been cleaned up, or until cleanup was deliberately skipped.
"""

from __future__ import annotations

import logging

from jfr_reconciler.models import Recording

logger = logging.getLogger("reconciler.finalizer")

DEFAULT_FINALIZER = "recording.finalizer.jfr-reconciler.io"


class FinalizerGuard:
    def __init__(self, store, token: str = DEFAULT_FINALIZER):
        self.store = store
        self.token = token

    def has(self, recording: Recording) -> bool:
        return self.token in recording.finalizers

    def add(self, recording: Recording) -> None:
        logger.info(f"[{recording.key}] Adding finalizer")
        if self.token not in recording.finalizers:
            recording.finalizers.append(self.token)
        try:
            self.store.update(recording)
        except Exception as e:
            logger.error(f"[{recording.key}] Failed to add finalizer: {e}")
            raise

    def remove(self, recording: Recording) -> None:
        logger.info(f"[{recording.key}] Removing finalizer")
        if self.token in recording.finalizers:
            recording.finalizers.remove(self.token)
        try:
            self.store.update(recording)
        except Exception as e:
            logger.error(f"[{recording.key}] Failed to remove finalizer: {e}")
            raise
