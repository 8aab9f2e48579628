"""GCS-backed resource store.

Every resource is one JSON object under ``namespaces/<ns>/<kind>/<name>.json``.
Reads remember the object generation; writes are generation-matched so a
stale writer gets ConflictError instead of silently clobbering a newer copy.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional, Tuple

from google.api_core.exceptions import NotFound, PreconditionFailed

from jfr_reconciler.errors import ConflictError
from jfr_reconciler.models import FlightRecorder, HostService, Recording, RequestKey, Service
from jfr_reconciler.utils import dump_json, utcnow

logger = logging.getLogger("reconciler.store")

RECORDINGS = "recordings"
FLIGHT_RECORDERS = "flightrecorders"
SERVICES = "services"
HOSTS = "containerjfrs"

_OBJECT_RE = re.compile(r"^namespaces/(?P<ns>[^/]+)/(?P<kind>[^/]+)/(?P<name>[^/]+)\.json$")


def object_path(kind: str, namespace: str, name: str) -> str:
    return f"namespaces/{namespace}/{kind}/{name}.json"


def key_from_object_name(object_name: str) -> Optional[RequestKey]:
    """Map a bucket object name back to a Recording key, if it is one."""
    m = _OBJECT_RE.match(object_name or "")
    if not m or m.group("kind") != RECORDINGS:
        return None
    return RequestKey(m.group("ns"), m.group("name"))


class ResourceStore:
    def __init__(self, bucket):
        self.bucket = bucket

    # ── reads ──

    def _read(self, path: str) -> Optional[Tuple[Dict[str, Any], int]]:
        blob = self.bucket.blob(path)
        try:
            raw = blob.download_as_text()
        except NotFound:
            return None
        return json.loads(raw), blob.generation

    def get_recording(self, key: RequestKey) -> Optional[Recording]:
        found = self._read(object_path(RECORDINGS, key.namespace, key.name))
        if found is None:
            return None
        data, generation = found
        return Recording.from_dict(data, generation=generation)

    def get_flight_recorder(self, namespace: str, name: str) -> Optional[FlightRecorder]:
        found = self._read(object_path(FLIGHT_RECORDERS, namespace, name))
        return FlightRecorder.from_dict(found[0]) if found else None

    def get_service(self, namespace: str, name: str) -> Optional[Service]:
        found = self._read(object_path(SERVICES, namespace, name))
        return Service.from_dict(found[0]) if found else None

    def find_host(self, namespace: str) -> Optional[HostService]:
        """First ContainerJFR object in the namespace, by name."""
        prefix = f"namespaces/{namespace}/{HOSTS}/"
        names = sorted(b.name for b in self.bucket.list_blobs(prefix=prefix) if b.name.endswith(".json"))
        for name in names:
            found = self._read(name)
            if found:
                return HostService.from_dict(found[0])
        return None

    def list_recording_keys(self) -> Iterator[RequestKey]:
        for blob in self.bucket.list_blobs(prefix="namespaces/"):
            key = key_from_object_name(blob.name)
            if key is not None:
                yield key

    # ── writes ──

    def _upload(self, path: str, payload: Dict[str, Any], generation: int) -> int:
        blob = self.bucket.blob(path)
        try:
            blob.upload_from_string(
                dump_json(payload),
                content_type="application/json",
                if_generation_match=generation,
            )
        except PreconditionFailed as e:
            raise ConflictError(f"{path} changed since generation {generation}") from e
        return blob.generation

    def _delete(self, path: str, generation: int) -> None:
        try:
            self.bucket.blob(path).delete(if_generation_match=generation)
        except PreconditionFailed as e:
            raise ConflictError(f"{path} changed since generation {generation}") from e
        except NotFound:
            logger.info(f"{path} already gone")

    def create(self, recording: Recording) -> Recording:
        """Store a new Recording. Fails with ConflictError if it already exists."""
        path = object_path(RECORDINGS, recording.namespace, recording.name)
        recording.generation = self._upload(path, recording.to_dict(), 0)
        return recording

    def update(self, recording: Recording) -> None:
        """Persist metadata, spec and status.

        A Recording marked for deletion whose last finalizer is gone is removed
        from the bucket instead.
        """
        path = object_path(RECORDINGS, recording.namespace, recording.name)
        if recording.deleting and not recording.finalizers:
            self._delete(path, recording.generation)
            logger.info(f"[{recording.key}] Finalizers cleared, object deleted")
            return
        recording.generation = self._upload(path, recording.to_dict(), recording.generation)

    def update_status(self, recording: Recording) -> bool:
        """Persist only the status block, against the generation it was read at.

        An unchanged status is not written, so the object generation (and any
        change notification hanging off it) only moves when status does.
        Returns True if a write happened.
        """
        path = object_path(RECORDINGS, recording.namespace, recording.name)
        found = self._read(path)
        if found is None:
            raise ConflictError(f"{path} no longer exists")
        stored, generation = found
        if generation != recording.generation:
            raise ConflictError(f"{path} changed since generation {recording.generation}")
        status = recording.status.to_dict()
        if stored.get("status") == status:
            return False
        stored["status"] = status
        recording.generation = self._upload(path, stored, generation)
        return True

    def request_deletion(self, key: RequestKey) -> bool:
        """Stamp the deletion marker. Returns False if the Recording is absent."""
        recording = self.get_recording(key)
        if recording is None:
            return False
        if recording.deletion_timestamp is None:
            recording.deletion_timestamp = utcnow()
        self.update(recording)
        return True
