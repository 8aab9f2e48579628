"""Recording reconciler.

Drives one Recording towards what its spec asks for, based on what the
ContainerJFR agent reports. Called once per change notification and again
whenever a previous call asked to be requeued:

  1. Host: find the namespace's ContainerJFR.
  2. Fetch: a vanished Recording is done; a deleting one without our
     finalizer is somebody else's business.
  3. Delete: drop the archived file, then the live session when the target
     is reachable, then release the finalizer. An unreachable or missing
     target releases the finalizer without remote cleanup.
  4. Sync: under the target lock, create (or adopt) or stop the session,
     copy the agent's view into status, archive once stopped, write status
     back when it changed.

Every failure is raised to the caller; nothing is retried in here.
"""

from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from jfr_reconciler.config import ReconcilerConfig
from jfr_reconciler.errors import HostNotFoundError, RecordingStateError, SessionError
from jfr_reconciler.finalizer import FinalizerGuard
from jfr_reconciler.models import HostService, Recording, RecordingDescriptor, RequestKey
from jfr_reconciler.notify import Notifier
from jfr_reconciler.resolver import TargetResolver, make_instance_checker
from jfr_reconciler.session import HttpSessionClient, SessionCache, SessionClient, SessionHandle
from jfr_reconciler.state_machine import (
    CreationAction,
    DeletionPlan,
    Observation,
    Phase,
    PhaseTracker,
    creation_action,
    deletion_plan,
    project_state,
    requeue_after,
    should_archive,
    should_stop,
)
from jfr_reconciler.store import ResourceStore
from jfr_reconciler.utils import from_epoch_millis

logger = logging.getLogger("reconciler")


@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None
    phase: Optional[Phase] = None
    path: List[Phase] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        store: ResourceStore,
        resolver: TargetResolver,
        sessions: SessionCache,
        finalizers: FinalizerGuard,
        notifier: Optional[Notifier] = None,
        target_ready_requeue_sec: float = 1.0,
        active_poll_requeue_sec: float = 10.0,
        max_state_validation_failures: int = 5,
    ):
        self.store = store
        self.resolver = resolver
        self.sessions = sessions
        self.finalizers = finalizers
        self.notifier = notifier or Notifier()
        self.target_ready_requeue_sec = target_ready_requeue_sec
        self.active_poll_requeue_sec = active_poll_requeue_sec
        self.max_state_validation_failures = max_state_validation_failures
        self._validation_failures: Dict[RequestKey, int] = {}
        self._validation_lock = threading.Lock()

    def reconcile(self, key: RequestKey) -> ReconcileResult:
        tracker = PhaseTracker(str(key))
        obs = Observation()
        tracker.advance(obs)
        logger.info(f"[{key}] Reconciling Recording")

        host = self.store.find_host(key.namespace)
        if host is None:
            raise HostNotFoundError(f"No ContainerJFR found in namespace {key.namespace}")
        obs.host_found = True

        recording = self.store.get_recording(key)
        obs.resource_found = recording is not None
        if recording is None:
            # Deleted after the request was queued
            self._clear_validation_failures(key)
            tracker.advance(obs)
            return self._result(None, tracker)

        obs.deleting = recording.deleting
        obs.has_finalizer = self.finalizers.has(recording)
        obs.state = recording.status.state
        obs.archive_requested = recording.spec.archive
        obs.download_url = recording.status.download_url
        phase = tracker.advance(obs)

        if phase is Phase.SETTLED:
            self._clear_validation_failures(key)
            logger.info(f"[{key}] Being deleted without our finalizer, nothing to clean up")
            return self._result(None, tracker)
        if phase is Phase.DELETING:
            return self._reconcile_deletion(recording, host, obs, tracker)
        return self._reconcile_active(recording, host, obs, tracker)

    # ── deletion ──

    def _reconcile_deletion(
        self,
        recording: Recording,
        host: HostService,
        obs: Observation,
        tracker: PhaseTracker,
    ) -> ReconcileResult:
        key = recording.key
        try:
            # The host handle is shared across keys; it is only used or replaced under the host lock
            with self.sessions.host_session(host.url) as host_session:
                self.delete_archived_if_present(recording, host_session)
        except SessionError as e:
            logger.error(f"[{key}] Failed to delete saved recording in ContainerJFR: {e}")
            raise

        jfr = self.resolver.flight_recorder_for(recording)
        obs.target_found = jfr is not None
        obs.target_ready = jfr is not None and jfr.target is not None
        plan = deletion_plan(obs)
        if plan is DeletionPlan.SKIP_REMOTE:
            logger.info(f"[{key}] No matching FlightRecorder, proceeding with recording deletion")
            self._release(recording, obs, tracker)
            return self._result(None, tracker)
        if plan is DeletionPlan.AWAIT_TARGET:
            return self._result(self.target_ready_requeue_sec, tracker)

        svc, endpoint = self.resolver.endpoint_for(jfr)
        obs.endpoint_live = self.resolver.live_instances(svc) > 0
        if deletion_plan(obs) is DeletionPlan.SKIP_REMOTE:
            logger.info(f"[{key}] No available instance behind {svc.name} to clean up, proceeding with recording deletion")
            self.notifier.notify(
                f"WARN: [{key}] Deleted without remote cleanup: service {svc.namespace}/{svc.name} has no live instances."
            )
            self._release(recording, obs, tracker)
            return self._result(None, tracker)

        with self.sessions.connected(host.url, endpoint) as session:
            try:
                self._delete_live(recording, session)
            except SessionError as e:
                logger.error(f"[{key}] Failed to delete recording in ContainerJFR: {e}")
            self._release(recording, obs, tracker)
        return self._result(None, tracker)

    def _release(self, recording: Recording, obs: Observation, tracker: PhaseTracker) -> None:
        self.finalizers.remove(recording)
        self._clear_validation_failures(recording.key)
        obs.has_finalizer = False
        tracker.advance(obs)

    def _delete_live(self, recording: Recording, session: SessionHandle) -> None:
        name = recording.spec.name
        if self._find_descriptor(session, name) is None:
            return
        session.delete_live(name)
        logger.info(f"[{recording.key}] Recording {name} successfully deleted")

    def delete_archived_if_present(self, recording: Recording, session: SessionHandle) -> None:
        """Delete the archived file behind status.downloadURL, if it still exists."""
        if recording.status.download_url is None:
            return
        filename = urlparse(recording.status.download_url).path.rstrip("/").rsplit("/", 1)[-1]
        if self._find_download_url(session, filename) is None:
            return
        session.delete_saved(filename)
        logger.info(f"[{recording.key}] Saved recording {filename} successfully deleted")

    # ── create / stop / sync ──

    def _reconcile_active(
        self,
        recording: Recording,
        host: HostService,
        obs: Observation,
        tracker: PhaseTracker,
    ) -> ReconcileResult:
        key = recording.key
        jfr = self.resolver.flight_recorder_for(recording)
        obs.target_found = jfr is not None
        if jfr is None:
            # Nothing to do until the reference is fixed
            tracker.advance(obs)
            return self._result(None, tracker)

        obs.target_ready = jfr.target is not None
        if not obs.target_ready:
            logger.info(f"[{key}] FlightRecorder {jfr.name} has no target yet")
            tracker.advance(obs)
            return self._result(self.target_ready_requeue_sec, tracker)

        svc, endpoint = self.resolver.endpoint_for(jfr)
        if tracker.advance(obs) is Phase.SETTLED:
            if not self.finalizers.has(recording):
                self.finalizers.add(recording)
            logger.info(f"[{key}] Recording is stopped and archived as requested, nothing to do")
            return self._result(None, tracker)

        # FIXME: a service backed by several instances gives no guarantee
        # that consecutive connections reach the same JVM.
        with self.sessions.connected(host.url, endpoint) as session:
            if not self.finalizers.has(recording):
                self.finalizers.add(recording)
                obs.has_finalizer = True

            self._create_or_stop(recording, session)

            logger.info(f"[{key}] Looking for recordings on service {svc.namespace}/{svc.name}")
            self._project_status(recording, session)
            obs.state = recording.status.state
            tracker.advance(obs)

            if should_archive(recording.spec.archive, recording.status.download_url, recording.status.state):
                self._archive(recording, session)
                obs.download_url = recording.status.download_url
                tracker.advance(obs)

        if self.store.update_status(recording):
            logger.info(f"[{key}] Recording successfully updated")
        else:
            logger.debug(f"[{key}] Status unchanged, nothing written")
        return self._result(requeue_after(recording.status.state, self.active_poll_requeue_sec), tracker)

    def _create_or_stop(self, recording: Recording, session: SessionHandle) -> None:
        key = recording.key
        spec = recording.spec
        if recording.status.state is None:
            # A start whose status write was lost is already live; the agent
            # rejects the same name twice, so adopt it and let projection catch up
            if self._find_descriptor(session, spec.name) is not None:
                logger.info(f"[{key}] Recording {spec.name} already live on the target, adopting it")
                return
            try:
                if creation_action(spec.duration) is CreationAction.START_CONTINUOUS:
                    logger.info(f"[{key}] Creating new continuous recording {spec.name} (events={spec.event_options})")
                    session.start_continuous(spec.name, spec.event_options)
                else:
                    seconds = int(spec.duration.total_seconds())
                    logger.info(f"[{key}] Creating new recording {spec.name} for {seconds}s (events={spec.event_options})")
                    session.start_timed(spec.name, seconds, spec.event_options)
            except SessionError as e:
                logger.error(f"[{key}] Failed to create new recording: {e}")
                raise
        elif should_stop(spec.state, recording.status.state):
            logger.info(f"[{key}] Stopping recording {spec.name}")
            try:
                session.stop(spec.name)
            except SessionError as e:
                logger.error(f"[{key}] Failed to stop recording: {e}")
                raise

    def _project_status(self, recording: Recording, session: SessionHandle) -> None:
        key = recording.key
        descriptor = self._find_descriptor(session, recording.spec.name)
        if descriptor is None:
            logger.info(f"[{key}] Recording {recording.spec.name} not listed by ContainerJFR yet")
            return
        try:
            state = project_state(descriptor.state)
        except RecordingStateError:
            self._note_validation_failure(key, descriptor.state)
            raise
        self._clear_validation_failures(key)
        recording.status.state = state
        recording.status.start_time = from_epoch_millis(descriptor.start_time)
        recording.status.duration = datetime.timedelta(milliseconds=descriptor.duration)

    def _archive(self, recording: Recording, session: SessionHandle) -> None:
        key = recording.key
        name = recording.spec.name
        try:
            filename = session.save_to_storage(name)
        except SessionError as e:
            logger.error(f"[{key}] Failed to save recording {name}: {e}")
            raise
        download_url = self._find_download_url(session, filename)
        if download_url is None:
            logger.warning(f"[{key}] Saved file {filename} not listed by ContainerJFR, download URL left unset")
            return
        logger.info(f"[{key}] Updating download URL to {download_url}")
        recording.status.record_download_url(download_url)
        self.notifier.notify(f"INFO: [{key}] Recording {name} archived: {download_url}")

    # ── lookups ──

    def _find_descriptor(self, session: SessionHandle, name: str) -> Optional[RecordingDescriptor]:
        for descriptor in session.list_live():
            if descriptor.name == name:
                return descriptor
        return None

    def _find_download_url(self, session: SessionHandle, filename: str) -> Optional[str]:
        for saved in session.list_saved():
            if saved.name == filename:
                return saved.download_url
        return None

    # ── unknown-state escalation ──

    def _note_validation_failure(self, key: RequestKey, raw_state: str) -> None:
        with self._validation_lock:
            count = self._validation_failures.get(key, 0) + 1
            self._validation_failures[key] = count
        logger.error(f"[{key}] Unknown recording state '{raw_state}' observed from ContainerJFR ({count} in a row)")
        if count == self.max_state_validation_failures:
            self.notifier.notify(
                f"ERROR: [{key}] ContainerJFR reported unknown state '{raw_state}' "
                f"{count} reconciliations in a row. Status is not advancing."
            )

    def _clear_validation_failures(self, key: RequestKey) -> None:
        with self._validation_lock:
            self._validation_failures.pop(key, None)

    def validation_failures(self, key: RequestKey) -> int:
        with self._validation_lock:
            return self._validation_failures.get(key, 0)

    def _result(self, requeue: Optional[float], tracker: PhaseTracker) -> ReconcileResult:
        return ReconcileResult(requeue_after=requeue, phase=tracker.phase, path=list(tracker.path))


def build_reconciler(
    config: ReconcilerConfig,
    bucket,
    instance_checker: Optional[Callable[[str, str], bool]] = None,
    session_factory: Optional[Callable[[str], SessionClient]] = None,
) -> Reconciler:
    """Wire a Reconciler against a GCS bucket and the ContainerJFR REST API."""
    store = ResourceStore(bucket)
    if session_factory is None:

        def session_factory(url: str) -> SessionClient:
            return HttpSessionClient(url, timeout=config.http_timeout_sec, auth_token=config.auth_token)

    return Reconciler(
        store=store,
        resolver=TargetResolver(store, instance_checker or make_instance_checker(config.project)),
        sessions=SessionCache(session_factory),
        finalizers=FinalizerGuard(store, config.finalizer),
        notifier=Notifier(config.discord_webhook_url),
        target_ready_requeue_sec=config.target_ready_requeue_sec,
        active_poll_requeue_sec=config.active_poll_requeue_sec,
        max_state_validation_failures=config.max_state_validation_failures,
    )
