import json

import pytest

from pingsix.event import Event, EventType, KeyValue, ProxyEventHandler, parse_key
from pingsix.global_rule import GLOBAL_RULE_MAP, reload_global_plugin
from pingsix.route import ROUTE_MAP, reload_global_route_match
from pingsix.service import SERVICE_MAP
from pingsix.ssl import SSL_MAP, global_ssl_match_fetch, reload_global_ssl_match
from pingsix.upstream import UPSTREAM_MAP


def _clear():
    for upstream in list(UPSTREAM_MAP):
        upstream.stop_health_check()
    for resources in (ROUTE_MAP, UPSTREAM_MAP, SERVICE_MAP, GLOBAL_RULE_MAP, SSL_MAP):
        resources.reload_resources([])
    reload_global_route_match()
    reload_global_plugin()
    reload_global_ssl_match()


@pytest.fixture(autouse=True)
def clean_registries():
    _clear()
    yield
    _clear()


def _kv(key, data):
    return KeyValue(key.encode(), json.dumps(data).encode())


def test_parse_key():
    assert parse_key(b"/apisix/routes/1") == ("1", "routes")
    assert parse_key("/apisix/upstreams/u1") == ("u1", "upstreams")
    assert parse_key("/prefix/routes/") == ("", "routes")


def test_parse_key_errors():
    with pytest.raises(ValueError):
        parse_key("routes/1")
    with pytest.raises(ValueError):
        parse_key(b"/apisix/\xff/1")


def test_put_route_event_uses_key_id():
    handler = ProxyEventHandler()
    handler.handle_event(
        Event(EventType.PUT, _kv("/apisix/routes/7", {"uri": "/hello", "upstream_id": "u1"}))
    )
    route = ROUTE_MAP.get("7")
    assert route.id == "7"
    assert route.inner.uri == "/hello"


def test_delete_route_event_removes():
    handler = ProxyEventHandler()
    handler.handle_event(Event(EventType.PUT, _kv("/apisix/routes/1", {"uri": "/a"})))
    assert ROUTE_MAP.get("1").inner.uri == "/a"
    handler.handle_event(Event(EventType.DELETE, KeyValue(b"/apisix/routes/1")))
    assert ROUTE_MAP.get("1") is None


def test_event_without_kv_is_ignored():
    handler = ProxyEventHandler()
    handler.handle_event(Event(EventType.PUT, _kv("/apisix/routes/1", {"uri": "/a"})))
    before = ROUTE_MAP.get("1")
    handler.handle_event(Event(EventType.DELETE, None))
    assert ROUTE_MAP.get("1") is before


def test_bad_json_is_skipped():
    handler = ProxyEventHandler()
    handler.handle_event(Event(EventType.PUT, KeyValue(b"/apisix/routes/1", b"{not json")))
    assert ROUTE_MAP.get("1") is None


def test_invalid_resource_is_skipped():
    handler = ProxyEventHandler()
    handler.handle_event(Event(EventType.PUT, _kv("/apisix/routes/1", {"methods": ["GET"]})))
    assert ROUTE_MAP.get("1") is None


def test_unknown_key_type_is_ignored():
    handler = ProxyEventHandler()
    handler.handle_event(Event(EventType.PUT, _kv("/apisix/things/1", {"uri": "/a"})))
    assert ROUTE_MAP.get("1") is None


def test_put_upstream_event():
    handler = ProxyEventHandler()
    handler.handle_event(
        Event(EventType.PUT, _kv("/apisix/upstreams/u1", {"nodes": {"127.0.0.1:1980": 1}}))
    )
    upstream = UPSTREAM_MAP.get("u1")
    assert upstream.inner.nodes == {"127.0.0.1:1980": 1}


def test_put_ssl_event_updates_matcher():
    handler = ProxyEventHandler()
    handler.handle_event(
        Event(
            EventType.PUT,
            _kv("/apisix/ssls/s1", {"cert": "bad", "key": "bad", "snis": ["example.com"]}),
        )
    )
    stored = SSL_MAP.get("s1")
    assert not stored.is_valid()
    assert global_ssl_match_fetch().match_sni("example.com") is stored
    handler.handle_event(Event(EventType.DELETE, KeyValue(b"/apisix/ssls/s1")))
    assert global_ssl_match_fetch().match_sni("example.com") is None


def test_list_response_sets_ids_and_reuses_unchanged():
    handler = ProxyEventHandler()
    kvs = [
        _kv("/apisix/routes/1", {"id": "other", "uri": "/a"}),
        _kv("/apisix/routes/2", {"uri": "/b"}),
        _kv("/apisix/global_rules/g1", {"plugins": {}}),
    ]
    handler.handle_list_response(kvs)
    first = ROUTE_MAP.get("1")
    assert first.id == "1"
    assert ROUTE_MAP.get("2").inner.uri == "/b"
    assert GLOBAL_RULE_MAP.get("g1").id == "g1"

    handler.handle_list_response(kvs)
    assert ROUTE_MAP.get("1") is first


def test_list_response_rebuilds_changed_and_drops_missing():
    handler = ProxyEventHandler()
    handler.handle_list_response(
        [_kv("/apisix/routes/1", {"uri": "/a"}), _kv("/apisix/routes/2", {"uri": "/b"})]
    )
    first = ROUTE_MAP.get("1")
    handler.handle_list_response([_kv("/apisix/routes/1", {"uri": "/changed"})])
    rebuilt = ROUTE_MAP.get("1")
    assert rebuilt is not first
    assert rebuilt.inner.uri == "/changed"
    assert ROUTE_MAP.get("2") is None


def test_list_response_skips_unbuildable_global_rule():
    handler = ProxyEventHandler()
    handler.handle_list_response(
        [
            _kv("/apisix/global_rules/g1", {"plugins": {"no-such-plugin": {}}}),
            _kv("/apisix/global_rules/g2", {"plugins": {}}),
        ]
    )
    assert GLOBAL_RULE_MAP.get("g1") is None
    assert GLOBAL_RULE_MAP.get("g2").id == "g2"


def test_list_response_skips_bad_values():
    handler = ProxyEventHandler()
    handler.handle_list_response(
        [
            KeyValue(b"/apisix/routes/1", b"oops"),
            KeyValue(b"bad", b"{}"),
            _kv("/apisix/routes/2", {"uri": "/ok"}),
        ]
    )
    assert ROUTE_MAP.get("1") is None
    assert ROUTE_MAP.get("2").inner.uri == "/ok"