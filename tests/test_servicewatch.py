import json
import queue
import threading
from concurrent.futures import CancelledError

import pytest

from goddess import servicewatch
from goddess.servicewatch import (
    CancelWatch,
    ServiceInstance,
    ServiceWatcher,
    instances_set_hash,
)

ENDPOINT = "helloworld"


class RecordingApplier:
    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.cancelled = False
        self._cond = threading.Condition()

    def callback(self, services):
        with self._cond:
            self.calls.append(list(services))
            self._cond.notify_all()
        if self.error is not None:
            raise self.error

    def canceled(self):
        return self.cancelled

    def wait_for(self, count, timeout=3.0):
        with self._cond:
            return self._cond.wait_for(lambda: len(self.calls) >= count, timeout)


class FakeWatcher:
    def __init__(self):
        self.items = queue.Queue()

    def next(self):
        item = self.items.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def stop(self, times=2):
        for _ in range(times):
            self.items.put(CancelledError())


class FakeDiscovery:
    def __init__(self, watcher=None, error=None):
        self.watcher = watcher
        self.error = error
        self.watched = []

    def watch(self, endpoint):
        self.watched.append(endpoint)
        if self.error is not None:
            raise self.error
        return self.watcher


def instance(ident, version="v1"):
    return ServiceInstance(
        id=ident,
        name=ENDPOINT,
        version=version,
        metadata={"weight": "10"},
        endpoints=[f"http://{ident}:8000"],
    )


@pytest.fixture
def watcher():
    return ServiceWatcher(cleanup_interval=None)


def call_wsgi(app, path, query=""):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "QUERY_STRING": query, "REQUEST_METHOD": "GET"}, start_response))
    return captured["status"], captured["headers"], body


def test_to_dict_field_order_and_nulls():
    data = ServiceInstance(id="a").to_dict()
    assert list(data) == ["id", "name", "version", "metadata", "endpoints"]
    assert data["metadata"] is None and data["endpoints"] is None


def test_hash_independent_of_order():
    a, b = instance("a"), instance("b")
    assert instances_set_hash([a, b]) == instances_set_hash([b, a])


def test_hash_changes_with_content():
    assert instances_set_hash([instance("a")]) != instances_set_hash([instance("a", "v2")])
    assert instances_set_hash([instance("a")]).isdigit()


def test_first_add_resolves_and_caches(watcher):
    fake = FakeWatcher()
    fake.items.put([instance("a")])
    applier = RecordingApplier()
    existed = watcher.add(FakeDiscovery(fake), ENDPOINT, applier)
    assert existed is False
    assert applier.calls == [[instance("a")]]
    assert watcher.selected_instances(ENDPOINT) == [instance("a")]
    assert len(watcher.appliers(ENDPOINT)) == 1
    fake.stop()


def test_second_add_uses_cache(watcher):
    fake = FakeWatcher()
    fake.items.put([instance("a")])
    discovery = FakeDiscovery(fake)
    watcher.add(discovery, ENDPOINT, RecordingApplier())
    second = RecordingApplier()
    assert watcher.add(discovery, ENDPOINT, second) is True
    assert second.calls == [[instance("a")]]
    assert discovery.watched == [ENDPOINT]
    assert len(watcher.appliers(ENDPOINT)) == 2
    fake.stop()


def test_initial_timeout_gives_empty_list(monkeypatch):
    watcher = ServiceWatcher(initial_resolve_timeout=0.05, cleanup_interval=None)
    fake = FakeWatcher()
    applier = RecordingApplier()
    assert watcher.add(FakeDiscovery(fake), ENDPOINT, applier) is False
    assert applier.calls == [[]]
    assert watcher.selected_instances(ENDPOINT) == []
    later = RecordingApplier()
    assert watcher.add(FakeDiscovery(fake), ENDPOINT, later) is True
    assert later.calls == []
    fake.stop()


def test_initial_failure_gives_empty_list(watcher):
    fake = FakeWatcher()
    fake.items.put(RuntimeError("boom"))
    applier = RecordingApplier()
    watcher.add(FakeDiscovery(fake), ENDPOINT, applier)
    assert applier.calls == [[]]
    fake.stop()


def test_watch_failure_still_registers_applier(watcher):
    applier = RecordingApplier()
    assert watcher.add(FakeDiscovery(error=RuntimeError("down")), ENDPOINT, applier) is False
    assert watcher.selected_instances(ENDPOINT) is None
    assert list(watcher.appliers(ENDPOINT).values()) == [applier]
    assert applier.calls == []


def test_updates_reach_appliers_and_skip_empty(watcher, monkeypatch):
    monkeypatch.setattr(servicewatch, "_RETRY_DELAY", 0.01)
    fake = FakeWatcher()
    fake.items.put([instance("a")])
    applier = RecordingApplier()
    watcher.add(FakeDiscovery(fake), ENDPOINT, applier)
    fake.items.put([])
    fake.items.put(RuntimeError("transient"))
    fake.items.put([instance("b")])
    assert applier.wait_for(2)
    assert applier.calls[1] == [instance("b")]
    assert watcher.selected_instances(ENDPOINT) == [instance("b")]
    fake.stop()


def test_do_callback_counts_cancellations(watcher):
    discovery = FakeDiscovery(error=RuntimeError("down"))
    cancelling = RecordingApplier(error=CancelWatch())
    failing = RecordingApplier(error=ValueError("bad"))
    healthy = RecordingApplier()
    for applier in (cancelling, failing, healthy):
        watcher.add(discovery, ENDPOINT, applier)
    services = [instance("a")]
    assert watcher.do_callback(ENDPOINT, services) == 1
    assert healthy.calls == [services]
    assert failing.calls == [services]


def test_cleanup_removes_canceled(watcher):
    discovery = FakeDiscovery(error=RuntimeError("down"))
    stale, live = RecordingApplier(), RecordingApplier()
    watcher.add(discovery, ENDPOINT, stale)
    watcher.add(discovery, ENDPOINT, live)
    stale.cancelled = True
    assert watcher.cleanup() == 1
    assert list(watcher.appliers(ENDPOINT).values()) == [live]
    assert watcher.cleanup() == 0


def test_debug_handler_nodes_and_appliers(watcher):
    fake = FakeWatcher()
    fake.items.put([instance("a")])
    watcher.add(FakeDiscovery(fake), ENDPOINT, RecordingApplier())
    app = watcher.debug_handler()

    status, headers, body = call_wsgi(app, "/debug/watcher/nodes", f"service={ENDPOINT}")
    assert status.startswith("200")
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body) == [instance("a").to_dict()]

    _, _, body = call_wsgi(app, "/debug/watcher/appliers", f"service={ENDPOINT}")
    appliers = json.loads(body)
    assert list(appliers.values()) == [{}]
    assert list(appliers) == list(watcher.appliers(ENDPOINT))
    fake.stop()


def test_debug_handler_unknown_service_and_path(watcher):
    app = watcher.debug_handler()
    _, _, body = call_wsgi(app, "/debug/watcher/nodes", "service=missing")
    assert body == b"null\n"
    status, _, body = call_wsgi(app, "/debug/other")
    assert status.startswith("404")
    assert body == b"404 page not found\n"