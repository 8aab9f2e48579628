"""Long-running controller: worker threads draining a WorkQueue of Recording keys.

A resync thread lists every Recording in the bucket on an interval and queues
it, which makes the controller level-triggered: a missed change is picked up
at the next resync at the latest.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from jfr_reconciler.models import RequestKey
from jfr_reconciler.workqueue import WorkQueue

logger = logging.getLogger("reconciler.controller")


def sweep(reconciler, keys: Iterable[RequestKey]) -> Dict[str, Dict[str, Any]]:
    """Reconcile each key once, in order. One failing key doesn't stop the rest."""
    results: Dict[str, Dict[str, Any]] = {}
    for key in sorted(keys):
        try:
            result = reconciler.reconcile(key)
            results[str(key)] = {"requeue_after": result.requeue_after}
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            results[str(key)] = {"error": str(e)}
    return results


class Controller:
    def __init__(
        self,
        reconciler,
        store,
        workers: int = 4,
        resync_sec: float = 60.0,
        queue: Optional[WorkQueue] = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.workers = workers
        self.resync_sec = resync_sec
        self.queue = queue or WorkQueue()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def resync(self) -> int:
        count = 0
        for key in self.store.list_recording_keys():
            self.queue.add(key)
            count += 1
        logger.debug(f"Resync queued {count} recording(s)")
        return count

    def process(self, key: RequestKey) -> None:
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"Error reconciling {key}, retrying in {delay:.1f}s: {e}", exc_info=True)
            return
        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.resync_sec):
            try:
                self.resync()
            except Exception as e:
                logger.warning(f"Resync failed: {e}")

    def start(self) -> None:
        logger.info(f"Controller starting ({self.workers} worker(s), resync every {self.resync_sec:.0f}s)")
        self.resync()
        for i in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"reconcile-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        t = threading.Thread(target=self._resync_loop, name="reconcile-resync", daemon=True)
        t.start()
        self._threads.append(t)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        logger.info("Controller stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()

    def run_once(self) -> Dict[str, Dict[str, Any]]:
        return sweep(self.reconciler, self.store.list_recording_keys())
