import json
import threading

import httpx
import pytest
import yaml

from goddess.ctrl_loader import (
    PRIORITY_CONFIG_FEATURE,
    CtrlConfigLoader,
    FeatureRegistry,
    NotModified,
    prepare_ctrl_service,
)


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _loader(tmp_path, handler, services="http://ctrl.example.com", features=None, priority=""):
    return CtrlConfigLoader(
        "gw",
        services,
        tmp_path / "config.yaml",
        priority,
        http_client=_client(handler),
        features=features if features is not None else FeatureRegistry(),
        advertise_addr="10.0.0.1",
    )


def _call(app, path, method="GET"):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": method}, start_response))
    return captured["status"], body


def test_prepare_ctrl_service_drops_invalid_and_keeps_all_valid():
    result = prepare_ctrl_service("http://a.example.com,http://[bad,http://b.example.com")
    assert sorted(result) == ["http://a.example.com", "http://b.example.com"]


def test_feature_registry_behaviour():
    registry = FeatureRegistry()
    registry.register("x", False)
    assert registry.enabled("x") is False
    assert registry.set_enabled("x", True) is True
    assert registry.enabled("x") is True
    assert registry.set_enabled("unknown", True) is False
    assert registry.enabled("unknown") is False
    with pytest.raises(ValueError):
        registry.register("x", True)


def test_load_writes_yaml_and_sends_params(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        body = {"config": json.dumps({"name": "gw", "version": "v1"}), "version": "v1"}
        return httpx.Response(200, json=body)

    loader = _loader(tmp_path, handler)
    assert loader.load() is True
    written = yaml.safe_load((tmp_path / "config.yaml").read_text())
    assert written == {"name": "gw", "version": "v1"}
    assert loader.last_version == "v1"
    request = seen[0]
    assert request.url.path == "/v1/control/gateway/release"
    assert request.url.params["gateway"] == "gw"
    assert request.url.params["ip_addr"] == "10.0.0.1"
    assert request.url.params["last_version"] == ""
    assert "supportPriorityConfig" not in request.url.params

    loader.load()
    assert seen[1].url.params["last_version"] == "v1"
    assert not list(tmp_path.glob("*.tmp"))


def test_load_keeps_base_path(tmp_path):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"config": "{}", "version": "1"})

    loader = _loader(tmp_path, handler, services="http://ctrl.example.com/api")
    assert loader.load() is True
    assert loader.last_version == "1"
    assert seen == ["/api/v1/control/gateway/release"]


def test_not_modified_leaves_file_untouched(tmp_path):
    loader = _loader(tmp_path, lambda request: httpx.Response(304))
    assert loader.load() is False
    assert not (tmp_path / "config.yaml").exists()


def test_failure_rotates_to_next_service(tmp_path):
    hosts = []

    def handler(request):
        hosts.append(request.url.host)
        return httpx.Response(500)

    loader = _loader(tmp_path, handler, services="http://a.example.com,http://b.example.com")
    with pytest.raises(RuntimeError, match="invalid status code: 500"):
        loader.load()
    with pytest.raises(RuntimeError):
        loader.load()
    assert hosts[0] != hosts[1]
    assert set(hosts) == {"a.example.com", "b.example.com"}


def test_priority_configs_written_and_stale_removed(tmp_path):
    priority = tmp_path / "canary"
    priority.mkdir()
    (priority / "stale.yaml").write_text("endpoints: []\n")
    (priority / "notes.txt").write_text("keep")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "config": "{}",
                "version": "1",
                "priorityConfigs": [
                    {"key": "canary", "config": json.dumps({"endpoints": []}), "version": "3"}
                ],
            },
        )

    features = FeatureRegistry()
    features.register(PRIORITY_CONFIG_FEATURE, True)
    loader = _loader(tmp_path, handler, features=features, priority=str(priority))
    loader.load()
    assert yaml.safe_load((priority / "canary.yaml").read_text()) == {"endpoints": []}
    assert not (priority / "stale.yaml").exists()
    assert (priority / "notes.txt").exists()
    assert loader.last_priority_version == {"canary": "3"}
    assert seen[0].url.params["supportPriorityConfig"] == "1"

    loader.load()
    assert seen[1].url.params["lastPriorityVersions"] == "canary=3"


def test_load_features_applies_switches(tmp_path):
    features = FeatureRegistry()
    features.register(PRIORITY_CONFIG_FEATURE, False)

    def handler(request):
        assert request.url.path == "/v1/control/gateway/features"
        return httpx.Response(200, json={"gateway": "gw", "features": {PRIORITY_CONFIG_FEATURE: True}})

    loader = _loader(tmp_path, handler, features=features)
    assert loader.load_features() == {PRIORITY_CONFIG_FEATURE: True}
    assert features.enabled(PRIORITY_CONFIG_FEATURE) is True


def test_load_features_not_modified_raises(tmp_path):
    loader = _loader(tmp_path, lambda request: httpx.Response(304))
    with pytest.raises(NotModified):
        loader.load_features()


def test_run_stops_after_one_round(tmp_path):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path.endswith("features"):
            return httpx.Response(200, json={"features": {}})
        return httpx.Response(200, json={"config": json.dumps({"name": "gw"}), "version": "7"})

    loader = _loader(tmp_path, handler)
    stop = threading.Event()
    stop.set()
    loader.run(stop)
    assert calls == []

    loader.poll_interval = 0.01
    stopper = threading.Event()

    def stop_soon():
        stopper.wait(0.001)

    worker = threading.Thread(target=loader.run, args=(stopper,))
    worker.start()
    stopper.set()
    worker.join(timeout=5)
    assert not worker.is_alive()


def test_debug_handler(tmp_path):
    def handler(request):
        return httpx.Response(200, json={"config": "{}", "version": "9"})

    loader = _loader(tmp_path, handler)
    app = loader.debug_handler()
    status, body = _call(app, "/debug/ctrl/inspect")
    assert status.startswith("200")
    payload = json.loads(body)
    assert payload["ctrl_service"] == ["http://ctrl.example.com"]
    assert payload["hostname"] == "gw"
    assert payload["advertise_addr"] == "10.0.0.1"
    assert payload["next_ctrl_service"] is False

    status, _ = _call(app, "/debug/ctrl/load")
    assert status.startswith("405")

    status, body = _call(app, "/debug/ctrl/load", method="POST")
    assert status.startswith("200")
    assert json.loads(body) == {}
    assert loader.last_version == "9"

    status, _ = _call(app, "/elsewhere")
    assert status.startswith("404")


def test_debug_handler_load_failure(tmp_path):
    loader = _loader(tmp_path, lambda request: httpx.Response(502))
    status, body = _call(loader.debug_handler(), "/debug/ctrl/load", method="POST")
    assert status.startswith("500")
    assert b"invalid status code: 502" in body


def test_advertise_addr_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ADVERTISE_ADDR", "10.1.2.3")
    loader = CtrlConfigLoader(
        "gw",
        "http://ctrl.example.com",
        tmp_path / "config.yaml",
        http_client=_client(lambda request: httpx.Response(304)),
        features=FeatureRegistry(),
    )
    assert loader.advertise_addr == "10.1.2.3"