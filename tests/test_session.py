"""Tests for jfr_reconciler.session and jfr_reconciler.locks"""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from fakes import FakeSessionClient
from jfr_reconciler.errors import SessionError
from jfr_reconciler.locks import LockRegistry
from jfr_reconciler.models import Endpoint
from jfr_reconciler.session import HttpSessionClient, SessionCache

BASE = "https://container-jfr.default.svc:8181"
TARGET_PATH = "/api/v1/targets/10.0.0.5%3A9091/recordings"


def _response(json_body=None, text="", status_error=None):
    resp = MagicMock()
    resp.json.return_value = json_body
    resp.text = text
    if status_error is not None:
        resp.raise_for_status.side_effect = status_error
    return resp


def _client(*responses):
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = list(responses) or None
    if not responses:
        session.request.return_value = _response([])
    return HttpSessionClient(BASE + "/", timeout=3.0, auth_token="tok", session=session), session


def _connected(*responses):
    client, session = _client(_response([]), *responses)
    client.connect("10.0.0.5", 9091)
    return client, session


# ── HttpSessionClient ──


class TestHttpSessionClient:
    def test_bearer_token(self):
        _, session = _client()
        assert session.headers["Authorization"] == "Bearer tok"

    def test_connect_checks_target(self):
        client, session = _connected()
        session.request.assert_called_once_with("GET", BASE + TARGET_PATH, timeout=3.0)

    def test_connect_failure_resets_target(self):
        client, _ = _client(_response(status_error=requests.HTTPError("404")))
        with pytest.raises(SessionError, match="GET"):
            client.connect("10.0.0.5", 9091)
        with pytest.raises(SessionError, match="Not connected"):
            client.list_live()

    def test_connection_error_wrapped(self):
        client, session = _client()
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(SessionError, match="refused"):
            client.list_saved()

    def test_target_calls_need_connect(self):
        client, session = _client()
        with pytest.raises(SessionError, match="Not connected"):
            client.start_continuous("rec1", [])
        session.request.assert_not_called()

    def test_start_continuous(self):
        client, session = _connected(_response())
        client.start_continuous("rec1", ["jdk.SocketRead:enabled=true", "jdk.CPULoad:enabled=true"])
        session.request.assert_called_with(
            "POST",
            BASE + TARGET_PATH,
            timeout=3.0,
            data={"recordingName": "rec1", "events": "jdk.SocketRead:enabled=true,jdk.CPULoad:enabled=true"},
        )

    def test_start_timed(self):
        client, session = _connected(_response())
        client.start_timed("rec1", 30, ["jdk.SocketRead:enabled=true"])
        _, kwargs = session.request.call_args
        assert kwargs["data"]["duration"] == "30"
        assert kwargs["data"]["recordingName"] == "rec1"

    def test_stop(self):
        client, session = _connected(_response())
        client.stop("rec 1")
        session.request.assert_called_with("PATCH", BASE + TARGET_PATH + "/rec%201", timeout=3.0, data="STOP")

    def test_list_live(self):
        body = [{"name": "rec1", "state": "RUNNING", "startTime": 1000, "duration": 0, "id": 1}]
        client, _ = _connected(_response(body))
        [d] = client.list_live()
        assert (d.name, d.state, d.start_time, d.duration) == ("rec1", "RUNNING", 1000, 0)

    def test_list_live_malformed(self):
        client, _ = _connected(_response([{"state": "RUNNING"}]))
        with pytest.raises(SessionError, match="Malformed"):
            client.list_live()

    def test_list_live_not_a_list(self):
        client, _ = _connected(_response({"error": "nope"}))
        with pytest.raises(SessionError, match="Expected a list"):
            client.list_live()

    def test_save_to_storage(self):
        client, session = _connected(_response(text="rec1_20260301.jfr\n"))
        assert client.save_to_storage("rec1") == "rec1_20260301.jfr"
        session.request.assert_called_with("PATCH", BASE + TARGET_PATH + "/rec1", timeout=3.0, data="SAVE")

    def test_save_without_filename(self):
        client, _ = _connected(_response(text="  "))
        with pytest.raises(SessionError, match="no filename"):
            client.save_to_storage("rec1")

    def test_list_saved_needs_no_target(self):
        body = [{"name": "rec1.jfr", "downloadUrl": BASE + "/api/v1/recordings/rec1.jfr"}]
        client, session = _client(_response(body))
        [s] = client.list_saved()
        assert s.download_url.endswith("/rec1.jfr")
        session.request.assert_called_with("GET", BASE + "/api/v1/recordings", timeout=3.0)

    def test_delete_live(self):
        client, session = _connected(_response())
        client.delete_live("rec1")
        session.request.assert_called_with("DELETE", BASE + TARGET_PATH + "/rec1", timeout=3.0)

    def test_delete_saved(self):
        client, session = _client(_response())
        client.delete_saved("rec1.jfr")
        session.request.assert_called_with("DELETE", BASE + "/api/v1/recordings/rec1.jfr", timeout=3.0)

    def test_disconnect_clears_target(self):
        client, _ = _connected()
        client.disconnect()
        with pytest.raises(SessionError, match="Not connected"):
            client.stop("rec1")

    def test_close_closes_session(self):
        client, session = _client()
        client.close()
        session.close.assert_called_once()


# ── SessionHandle / SessionCache ──


ENDPOINT = Endpoint("10.0.0.5", 9091)


class TestSessionCache:
    def test_handle_reused_while_healthy(self):
        made = []
        cache = SessionCache(lambda url: made.append(FakeSessionClient()) or made[-1])
        assert cache.handle(BASE) is cache.handle(BASE)
        assert len(made) == 1

    def test_handles_keyed_by_endpoint(self):
        cache = SessionCache(lambda url: FakeSessionClient())
        host = cache.handle(BASE)
        a = cache.handle(BASE, ENDPOINT)
        b = cache.handle(BASE, Endpoint("10.0.0.6", 9091))
        assert len({id(host), id(a), id(b)}) == 3

    def test_failure_invalidates_handle(self):
        client = FakeSessionClient(fail_on={"stop"})
        cache = SessionCache(lambda url: client)
        handle = cache.handle(BASE, ENDPOINT)
        with pytest.raises(SessionError):
            handle.stop("rec1")
        assert not handle.healthy

    def test_unhealthy_handle_replaced_and_closed(self):
        clients = [FakeSessionClient(fail_on={"list_live"}), FakeSessionClient()]
        cache = SessionCache(lambda url: clients.pop(0))
        first = cache.handle(BASE)
        with pytest.raises(SessionError):
            first.list_live()
        second = cache.handle(BASE)
        assert second is not first
        assert first.client.closed
        assert second.healthy

    def test_invalidate(self):
        cache = SessionCache(lambda url: FakeSessionClient())
        handle = cache.handle(BASE)
        handle.invalidate()
        assert cache.handle(BASE) is not handle

    def test_connected_span(self):
        client = FakeSessionClient(live=[])
        cache = SessionCache(lambda url: client)
        with cache.connected(BASE, ENDPOINT) as handle:
            handle.list_live()
        assert client.calls == [("connect", "10.0.0.5", 9091), ("list_live",), ("disconnect",)]

    def test_connected_disconnects_on_error(self):
        client = FakeSessionClient(fail_on={"stop"})
        cache = SessionCache(lambda url: client)
        with pytest.raises(SessionError):
            with cache.connected(BASE, ENDPOINT) as handle:
                handle.stop("rec1")
        assert client.calls[-1] == ("disconnect",)
        assert len(cache.locks) == 0

    def test_connect_failure_releases_lock(self):
        client = FakeSessionClient(fail_on={"connect"})
        cache = SessionCache(lambda url: client)
        with pytest.raises(SessionError):
            with cache.connected(BASE, ENDPOINT):
                pass
        assert "disconnect" not in client.ops()
        assert len(cache.locks) == 0

    def test_same_endpoint_serialized(self):
        cache = SessionCache(lambda url: FakeSessionClient())
        inside = threading.Event()
        release = threading.Event()
        entered = []

        def first():
            with cache.connected(BASE, ENDPOINT):
                inside.set()
                release.wait(5)

        def second():
            with cache.connected(BASE, ENDPOINT):
                entered.append(True)

        t1 = threading.Thread(target=first)
        t1.start()
        assert inside.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.2)
        assert entered == []
        release.set()
        t1.join(5)
        t2.join(5)
        assert entered == [True]

    def test_host_session_holds_host_lock(self):
        cache = SessionCache(lambda url: FakeSessionClient())
        with cache.host_session(BASE) as handle:
            assert cache.locks.lock_for(BASE).locked()
            assert handle is cache.handle(BASE)
        assert len(cache.locks) == 0

    def test_host_session_replaces_unhealthy_handle_under_lock(self):
        clients = [FakeSessionClient(fail_on={"list_saved"}), FakeSessionClient(saved=[])]
        cache = SessionCache(lambda url: clients.pop(0))
        with pytest.raises(SessionError):
            with cache.host_session(BASE) as first:
                first.list_saved()
        with cache.host_session(BASE) as second:
            assert second is not first
            assert first.client.closed
            assert second.list_saved() == []

    def test_host_session_serialized(self):
        cache = SessionCache(lambda url: FakeSessionClient(saved=[]))
        inside = threading.Event()
        release = threading.Event()
        entered = []

        def first():
            with cache.host_session(BASE) as handle:
                inside.set()
                release.wait(5)
                handle.list_saved()

        def second():
            with cache.host_session(BASE):
                entered.append(True)

        t1 = threading.Thread(target=first)
        t1.start()
        assert inside.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.2)
        assert entered == []
        release.set()
        t1.join(5)
        t2.join(5)
        assert entered == [True]


class TestLockRegistry:
    def test_same_key_same_lock(self):
        locks = LockRegistry()
        assert locks.lock_for("a") is locks.lock_for("a")
        assert locks.lock_for("a") is not locks.lock_for("b")
        assert len(locks) == 2

    def test_different_keys_do_not_block(self):
        locks = LockRegistry()
        with locks.hold("10.0.0.5:9091"):
            with locks.hold("10.0.0.6:9091"):
                assert locks.lock_for("10.0.0.5:9091").locked()
                assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_dropped_after_last_holder(self):
        locks = LockRegistry()
        with locks.hold("10.0.0.5:9091"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_entry_kept_while_waiter_queued(self):
        locks = LockRegistry()
        inside = threading.Event()
        release = threading.Event()
        waited = []

        def first():
            with locks.hold("10.0.0.5:9091"):
                inside.set()
                release.wait(5)

        def second():
            with locks.hold("10.0.0.5:9091"):
                waited.append(len(locks))

        t1 = threading.Thread(target=first)
        t1.start()
        assert inside.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.2)
        release.set()
        t1.join(5)
        t2.join(5)
        # the waiter reused the same entry instead of racing a fresh lock
        assert waited == [1]
        assert len(locks) == 0

    def test_entry_dropped_when_body_raises(self):
        locks = LockRegistry()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
