from urllib.parse import urlsplit

import pytest

from goddess.target import Target, is_secure, parse_endpoint, parse_target


def test_bare_address_is_direct():
    assert parse_target("127.0.0.1:8000") == Target("direct", "", "127.0.0.1:8000")


def test_discovery_target():
    target = parse_target("discovery:///helloworld")
    assert target.scheme == "discovery"
    assert target.endpoint == "helloworld"
    assert target.authority == ""


def test_authority_is_kept():
    target = parse_target("discovery://consul/helloworld")
    assert target.authority == "consul"
    assert target.endpoint == "helloworld"


def test_root_path_gives_empty_endpoint():
    assert parse_target("discovery:///").endpoint == ""


def test_invalid_port_raises():
    with pytest.raises(ValueError):
        parse_target("http://host:abc/x")


def test_control_character_raises():
    with pytest.raises(ValueError):
        parse_target("http://host/\x01")


def test_parse_endpoint_matches_scheme():
    endpoints = ["grpc://10.0.0.1:9000", "http://10.0.0.1:8000"]
    assert parse_endpoint(endpoints, "http", False) == "10.0.0.1:8000"
    assert parse_endpoint(endpoints, "grpc", False) == "10.0.0.1:9000"


def test_parse_endpoint_respects_security():
    endpoints = ["http://a:1?isSecure=true", "http://b:2"]
    assert parse_endpoint(endpoints, "http", True) == "a:1"
    assert parse_endpoint(endpoints, "http", False) == "b:2"


def test_parse_endpoint_without_match():
    assert parse_endpoint(["grpc://10.0.0.1:9000"], "http", False) == ""
    assert parse_endpoint([], "http", False) == ""


def test_parse_endpoint_drops_userinfo():
    assert parse_endpoint(["http://user@h:3"], "http", False) == "h:3"


@pytest.mark.parametrize("value", ["true", "1", "T", "TRUE", "True", "t"])
def test_is_secure_true(value):
    assert is_secure(f"http://h:1?isSecure={value}") is True


@pytest.mark.parametrize("value", ["false", "0", "yes", "", "on"])
def test_is_secure_false(value):
    assert is_secure(f"http://h:1?isSecure={value}") is False


def test_is_secure_accepts_split_result():
    assert is_secure(urlsplit("http://h:1?isSecure=1")) is True
    assert is_secure(urlsplit("http://h:1")) is False