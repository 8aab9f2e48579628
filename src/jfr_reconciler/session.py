"""Session client for the ContainerJFR REST API and the cache that owns it.

A SessionHandle wraps one client with a health flag. Any SessionError raised
through the handle marks it unhealthy, and the cache hands out a fresh client
on the next lookup instead of retrying the broken one in place.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests

from jfr_reconciler.errors import SessionError
from jfr_reconciler.locks import LockRegistry
from jfr_reconciler.models import Endpoint, RecordingDescriptor, SavedRecordingDescriptor

logger = logging.getLogger("reconciler.session")


class SessionClient(Protocol):
    def connect(self, address: str, port: int) -> None: ...

    def disconnect(self) -> None: ...

    def start_continuous(self, name: str, event_options: List[str]) -> None: ...

    def start_timed(self, name: str, duration_seconds: int, event_options: List[str]) -> None: ...

    def stop(self, name: str) -> None: ...

    def list_live(self) -> List[RecordingDescriptor]: ...

    def save_to_storage(self, name: str) -> str: ...

    def list_saved(self) -> List[SavedRecordingDescriptor]: ...

    def delete_live(self, name: str) -> None: ...

    def delete_saved(self, filename: str) -> None: ...


class HttpSessionClient:
    """ContainerJFR v1 REST client. Target-scoped calls need connect() first."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        auth_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if auth_token:
            self._session.headers["Authorization"] = f"Bearer {auth_token}"
        self._target: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SessionError(f"{method} {path} failed: {e}") from e
        return resp

    def _json_list(self, resp: requests.Response, path: str) -> list:
        try:
            payload = resp.json()
        except ValueError as e:
            raise SessionError(f"Malformed response from {path}: {e}") from e
        if not isinstance(payload, list):
            raise SessionError(f"Expected a list from {path}, got {type(payload).__name__}")
        return payload

    def _recordings_path(self, name: str = "") -> str:
        if self._target is None:
            raise SessionError("Not connected to a target")
        path = f"/api/v1/targets/{quote(self._target, safe='')}/recordings"
        if name:
            path = f"{path}/{quote(name, safe='')}"
        return path

    def connect(self, address: str, port: int) -> None:
        self._target = f"{address}:{port}"
        try:
            self._request("GET", self._recordings_path())
        except SessionError:
            self._target = None
            raise
        logger.debug(f"Connected to {self._target} via {self.base_url}")

    def disconnect(self) -> None:
        self._target = None

    def close(self) -> None:
        self._target = None
        self._session.close()

    def start_continuous(self, name: str, event_options: List[str]) -> None:
        self._request(
            "POST",
            self._recordings_path(),
            data={"recordingName": name, "events": ",".join(event_options)},
        )

    def start_timed(self, name: str, duration_seconds: int, event_options: List[str]) -> None:
        self._request(
            "POST",
            self._recordings_path(),
            data={
                "recordingName": name,
                "duration": str(duration_seconds),
                "events": ",".join(event_options),
            },
        )

    def stop(self, name: str) -> None:
        self._request("PATCH", self._recordings_path(name), data="STOP")

    def list_live(self) -> List[RecordingDescriptor]:
        path = self._recordings_path()
        try:
            return [RecordingDescriptor.from_dict(d) for d in self._json_list(self._request("GET", path), path)]
        except (KeyError, TypeError, ValueError) as e:
            raise SessionError(f"Malformed recording descriptor from {path}: {e}") from e

    def save_to_storage(self, name: str) -> str:
        filename = self._request("PATCH", self._recordings_path(name), data="SAVE").text.strip()
        if not filename:
            raise SessionError(f"Saving {name} returned no filename")
        return filename

    def list_saved(self) -> List[SavedRecordingDescriptor]:
        path = "/api/v1/recordings"
        try:
            return [SavedRecordingDescriptor.from_dict(d) for d in self._json_list(self._request("GET", path), path)]
        except (KeyError, TypeError) as e:
            raise SessionError(f"Malformed saved recording from {path}: {e}") from e

    def delete_live(self, name: str) -> None:
        self._request("DELETE", self._recordings_path(name))

    def delete_saved(self, filename: str) -> None:
        self._request("DELETE", f"/api/v1/recordings/{quote(filename, safe='')}")


HandleKey = Tuple[str, Optional[str]]


class SessionHandle:
    """A cached client plus a health flag flipped by any failed call."""

    def __init__(self, key: HandleKey, client: SessionClient):
        self.key = key
        self.client = client
        self.healthy = True

    def _guard(self, op: str, fn: Callable, *args):
        try:
            return fn(*args)
        except SessionError as e:
            self.healthy = False
            logger.warning(f"Session {self.key[0]} ({self.key[1] or 'host'}) invalidated after {op} failed: {e}")
            raise

    def invalidate(self) -> None:
        self.healthy = False

    def connect(self, address: str, port: int) -> None:
        self._guard("connect", self.client.connect, address, port)

    def disconnect(self) -> None:
        self.client.disconnect()

    def start_continuous(self, name: str, event_options: List[str]) -> None:
        self._guard("start", self.client.start_continuous, name, event_options)

    def start_timed(self, name: str, duration_seconds: int, event_options: List[str]) -> None:
        self._guard("dump", self.client.start_timed, name, duration_seconds, event_options)

    def stop(self, name: str) -> None:
        self._guard("stop", self.client.stop, name)

    def list_live(self) -> List[RecordingDescriptor]:
        return self._guard("list", self.client.list_live)

    def save_to_storage(self, name: str) -> str:
        return self._guard("save", self.client.save_to_storage, name)

    def list_saved(self) -> List[SavedRecordingDescriptor]:
        return self._guard("list-saved", self.client.list_saved)

    def delete_live(self, name: str) -> None:
        self._guard("delete", self.client.delete_live, name)

    def delete_saved(self, filename: str) -> None:
        self._guard("delete-saved", self.client.delete_saved, filename)


class SessionCache:
    """Keeps one handle per (host, endpoint) alive across reconciliations."""

    def __init__(self, factory: Callable[[str], SessionClient], locks: Optional[LockRegistry] = None):
        self._factory = factory
        self._handles: Dict[HandleKey, SessionHandle] = {}
        self._handles_lock = threading.Lock()
        self.locks = locks or LockRegistry()

    def handle(self, host_url: str, endpoint: Optional[Endpoint] = None) -> SessionHandle:
        key = (host_url, endpoint.identity if endpoint else None)
        with self._handles_lock:
            current = self._handles.get(key)
            if current is not None and current.healthy:
                return current
            if current is not None:
                logger.info(f"Re-establishing session to {host_url} ({key[1] or 'host'})")
                close = getattr(current.client, "close", None)
                if close is not None:
                    close()
            fresh = SessionHandle(key, self._factory(host_url))
            self._handles[key] = fresh
            return fresh

    @contextmanager
    def host_session(self, host_url: str) -> Iterator[SessionHandle]:
        """Hold the host lock and the host-level handle for the whole span.

        The host handle is shared by every Recording in the namespace, so it is
        only looked up (and an unhealthy one closed) while the lock is held.
        """
        with self.locks.hold(host_url):
            yield self.handle(host_url)

    @contextmanager
    def connected(self, host_url: str, endpoint: Endpoint) -> Iterator[SessionHandle]:
        """Hold the endpoint lock and a connected handle for the whole span."""
        with self.locks.hold(endpoint.identity):
            handle = self.handle(host_url, endpoint)
            handle.connect(endpoint.address, endpoint.port)
            try:
                yield handle
            finally:
                handle.disconnect()
