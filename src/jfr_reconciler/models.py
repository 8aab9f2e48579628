from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from jfr_reconciler.state_machine import RecordingState
from jfr_reconciler.utils import format_iso, parse_iso


class RequestKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "RequestKey":
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Request key must look like 'namespace/name', got '{value}'")
        return cls(namespace, name)


def _seconds(value: Any) -> datetime.timedelta:
    return datetime.timedelta(seconds=float(value or 0))


def _optional_state(value: Optional[str]) -> Optional[RecordingState]:
    """Stored state names are case-insensitive; ``stopped`` means STOPPED."""
    if value is None or value == "":
        return None
    try:
        return RecordingState(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(s.value for s in RecordingState)
        raise ValueError(f"Invalid recording state '{value}' (expected one of {allowed})") from None


@dataclass
class RecordingSpec:
    name: str
    flight_recorder: Optional[str] = None
    duration: datetime.timedelta = datetime.timedelta(0)
    state: Optional[RecordingState] = None
    event_options: List[str] = field(default_factory=list)
    archive: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordingSpec":
        return cls(
            name=data["name"],
            flight_recorder=data.get("flightRecorder") or None,
            duration=_seconds(data.get("duration")),
            state=_optional_state(data.get("state")),
            event_options=[str(x) for x in data.get("eventOptions", [])],
            archive=bool(data.get("archive", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "flightRecorder": self.flight_recorder,
            "duration": self.duration.total_seconds(),
            "state": self.state.value if self.state else None,
            "eventOptions": list(self.event_options),
            "archive": self.archive,
        }


@dataclass
class RecordingStatus:
    state: Optional[RecordingState] = None
    start_time: Optional[datetime.datetime] = None
    duration: datetime.timedelta = datetime.timedelta(0)
    download_url: Optional[str] = None

    def record_download_url(self, url: str) -> bool:
        """Set the download URL once. Returns False if one was already set."""
        if self.download_url is not None:
            return False
        self.download_url = url
        return True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecordingStatus":
        data = data or {}
        return cls(
            state=_optional_state(data.get("state")),
            start_time=parse_iso(data.get("startTime")),
            duration=_seconds(data.get("duration")),
            download_url=data.get("downloadURL"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value if self.state else None,
            "startTime": format_iso(self.start_time),
            "duration": self.duration.total_seconds(),
            "downloadURL": self.download_url,
        }


@dataclass
class Recording:
    namespace: str
    name: str
    spec: RecordingSpec
    status: RecordingStatus = field(default_factory=RecordingStatus)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime.datetime] = None
    # Store generation the object was read at; 0 means never stored.
    generation: int = 0

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], generation: int = 0) -> "Recording":
        meta = data.get("metadata", {})
        return cls(
            namespace=meta["namespace"],
            name=meta["name"],
            spec=RecordingSpec.from_dict(data.get("spec", {})),
            status=RecordingStatus.from_dict(data.get("status")),
            finalizers=list(meta.get("finalizers", [])),
            deletion_timestamp=parse_iso(meta.get("deletionTimestamp")),
            generation=generation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "namespace": self.namespace,
                "name": self.name,
                "finalizers": list(self.finalizers),
                "deletionTimestamp": format_iso(self.deletion_timestamp),
            },
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }


class TargetRef(NamedTuple):
    namespace: str
    name: str


@dataclass
class FlightRecorder:
    namespace: str
    name: str
    target: Optional[TargetRef] = None
    port: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlightRecorder":
        meta = data.get("metadata", {})
        status = data.get("status") or {}
        target = status.get("target")
        return cls(
            namespace=meta["namespace"],
            name=meta["name"],
            target=TargetRef(target["namespace"], target["name"]) if target else None,
            port=int(status.get("port", 0)),
        )


@dataclass
class BackingInstance:
    instance: str
    zone: str


@dataclass
class Service:
    namespace: str
    name: str
    cluster_ip: str
    endpoints: List[BackingInstance] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Service":
        meta = data.get("metadata", {})
        spec = data.get("spec", {})
        return cls(
            namespace=meta["namespace"],
            name=meta["name"],
            cluster_ip=spec.get("clusterIP", ""),
            endpoints=[
                BackingInstance(instance=e["instance"], zone=e["zone"])
                for e in data.get("endpoints", [])
            ],
        )


@dataclass
class HostService:
    """The ContainerJFR deployment that fronts every target in a namespace."""

    namespace: str
    name: str
    url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostService":
        meta = data.get("metadata", {})
        status = data.get("status") or {}
        url = status.get("url") or f"https://{meta['name']}.{meta['namespace']}.svc:8181"
        return cls(namespace=meta["namespace"], name=meta["name"], url=url.rstrip("/"))


class Endpoint(NamedTuple):
    address: str
    port: int

    @property
    def identity(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass
class RecordingDescriptor:
    name: str
    state: str
    start_time: int
    duration: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordingDescriptor":
        return cls(
            name=data["name"],
            state=data["state"],
            start_time=int(data.get("startTime", 0)),
            duration=int(data.get("duration", 0)),
        )


@dataclass
class SavedRecordingDescriptor:
    name: str
    download_url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedRecordingDescriptor":
        return cls(name=data["name"], download_url=data["downloadUrl"])
