"""In-memory stand-ins for GCS and the ContainerJFR agent."""

import json

from google.api_core.exceptions import NotFound, PreconditionFailed

from jfr_reconciler.errors import SessionError
from jfr_reconciler.models import RecordingDescriptor, SavedRecordingDescriptor

NS = "default"
FINALIZER = "recording.finalizer.jfr-reconciler.io"
HOST_URL = "https://container-jfr.default.svc:8181"

HOST_PATH = f"namespaces/{NS}/containerjfrs/container-jfr.json"
FR_PATH = f"namespaces/{NS}/flightrecorders/jfr-app.json"
SVC_PATH = f"namespaces/{NS}/services/app.json"


def rec_path(name="rec1"):
    return f"namespaces/{NS}/recordings/{name}.json"


class MockBlob:
    """Mock GCS blob with generation tracking."""

    def __init__(self, name, data=None, generation=1):
        self.name = name
        self._data = data if data is None or isinstance(data, str) else json.dumps(data)
        self._exists = data is not None
        self.generation = generation if self._exists else None
        self._uploaded = []
        self._deleted = False

    def download_as_text(self):
        if not self._exists:
            raise NotFound("No such object")
        return self._data

    def upload_from_string(self, data, content_type=None, if_generation_match=None):
        if if_generation_match == 0 and self._exists:
            raise PreconditionFailed("exists")
        if if_generation_match not in (None, 0):
            if not self._exists or if_generation_match != self.generation:
                raise PreconditionFailed("generation mismatch")
        self._data = data
        self._exists = True
        self.generation = (self.generation or 0) + 1
        self._uploaded.append(data)

    def delete(self, if_generation_match=None):
        if not self._exists:
            raise NotFound("No such object")
        if if_generation_match is not None and if_generation_match != self.generation:
            raise PreconditionFailed("generation mismatch")
        self._data = None
        self._exists = False
        self._deleted = True

    def exists(self):
        return self._exists

    def json(self):
        return json.loads(self._data)


class MockBucket:
    """Mock GCS bucket with blob routing; remembers every path touched."""

    def __init__(self, blobs=None):
        self._blobs = {}
        self.accessed = []
        for path, data in (blobs or {}).items():
            self._blobs[path] = data if isinstance(data, MockBlob) else MockBlob(path, data)

    def blob(self, path):
        self.accessed.append(path)
        if path not in self._blobs:
            self._blobs[path] = MockBlob(path)
        return self._blobs[path]

    def list_blobs(self, prefix=""):
        return [b for p, b in sorted(self._blobs.items()) if p.startswith(prefix) and b.exists()]


class FakeSessionClient:
    """Records every call; ops named in fail_on raise SessionError.

    Like the agent, a start lists the new recording (as ``on_start``, or RUNNING
    by default) and a start for a name that is already live is rejected.
    """

    def __init__(self, live=None, saved=None, save_filename=None, fail_on=(), on_start=None, list_started=True):
        self.calls = []
        self.live = list(live or [])
        self.saved = list(saved or [])
        self.save_filename = save_filename
        self.fail_on = set(fail_on)
        self.on_start = on_start
        self.list_started = list_started
        self.target = None
        self.closed = False

    def _record(self, op, *args):
        self.calls.append((op,) + args)
        if op in self.fail_on:
            raise SessionError(f"{op} failed")

    def ops(self):
        return [c[0] for c in self.calls]

    def connect(self, address, port):
        self._record("connect", address, port)
        self.target = (address, port)

    def disconnect(self):
        self.calls.append(("disconnect",))
        self.target = None

    def close(self):
        self.closed = True

    def _started(self, name, duration_ms):
        if any(d.name == name for d in self.live):
            raise SessionError(f"Recording with name {name} already exists")
        if self.list_started:
            self.live.append(self.on_start or descriptor(name=name, duration=duration_ms))

    def start_continuous(self, name, event_options):
        self._record("start_continuous", name, list(event_options))
        self._started(name, 0)

    def start_timed(self, name, duration_seconds, event_options):
        self._record("start_timed", name, duration_seconds, list(event_options))
        self._started(name, duration_seconds * 1000)

    def stop(self, name):
        self._record("stop", name)

    def list_live(self):
        self._record("list_live")
        return list(self.live)

    def save_to_storage(self, name):
        self._record("save_to_storage", name)
        return self.save_filename

    def list_saved(self):
        self._record("list_saved")
        return list(self.saved)

    def delete_live(self, name):
        self._record("delete_live", name)

    def delete_saved(self, filename):
        self._record("delete_saved", filename)


def descriptor(name="rec1", state="RUNNING", start_time=1000, duration=0):
    return RecordingDescriptor(name=name, state=state, start_time=start_time, duration=duration)


def saved(name="rec1.jfr", url="https://container-jfr.default.svc:8181/api/v1/recordings/rec1.jfr"):
    return SavedRecordingDescriptor(name=name, download_url=url)


def make_recording_doc(
    name="rec1",
    duration=0,
    state=None,
    archive=False,
    status=None,
    finalizers=None,
    deleting=False,
    flight_recorder="jfr-app",
    event_options=("jdk.SocketRead:enabled=true",),
):
    return {
        "metadata": {
            "namespace": NS,
            "name": name,
            "finalizers": list(finalizers or []),
            "deletionTimestamp": "2026-02-28T12:00:00.000000Z" if deleting else None,
        },
        "spec": {
            "name": name,
            "flightRecorder": flight_recorder,
            "duration": duration,
            "state": state,
            "eventOptions": list(event_options),
            "archive": archive,
        },
        "status": status or {"state": None, "startTime": None, "duration": 0, "downloadURL": None},
    }


def host_doc():
    return {
        "metadata": {"namespace": NS, "name": "container-jfr"},
        "status": {"url": HOST_URL},
    }


def flight_recorder_doc(target=True, port=9091):
    status = {"port": port}
    if target:
        status["target"] = {"namespace": NS, "name": "app"}
    return {"metadata": {"namespace": NS, "name": "jfr-app"}, "status": status}


def service_doc(instances=("app-vm-1",)):
    return {
        "metadata": {"namespace": NS, "name": "app"},
        "spec": {"clusterIP": "10.0.0.5"},
        "endpoints": [{"instance": i, "zone": "us-east1-c"} for i in instances],
    }


def make_world(recording=None, host=True, flight_recorder=True, target=True, service=True):
    blobs = {}
    if host:
        blobs[HOST_PATH] = host_doc()
    if flight_recorder:
        blobs[FR_PATH] = flight_recorder_doc(target=target)
    if service:
        blobs[SVC_PATH] = service_doc()
    if recording is not None:
        blobs[rec_path(recording["metadata"]["name"])] = recording
    return MockBucket(blobs)
