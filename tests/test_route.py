import asyncio

import pytest

from pingsix.discovery import HybridDiscovery
from pingsix.models import Route, Service, Timeout, Upstream
from pingsix.request import Request
from pingsix.resources import PluginError, ProxyPlugin, register_plugin
from pingsix.route import (
    ROUTE_MAP,
    ProxyRoute,
    RouteMatcher,
    global_route_match_fetch,
    load_static_routes,
    reload_global_route_match,
)
from pingsix.router import InsertError
from pingsix.service import SERVICE_MAP, ProxyService
from pingsix.upstream import UPSTREAM_MAP, LoadBalancer, ProxyUpstream


class _Tag(ProxyPlugin):
    def __init__(self, name, priority=0):
        self.name = name
        self.priority = priority


register_plugin("route-test-tag", lambda conf: _Tag("route-test-tag", conf.get("priority", 0)))


@pytest.fixture(autouse=True)
def _clean():
    yield
    ROUTE_MAP.reload_resources([])
    SERVICE_MAP.reload_resources([])
    UPSTREAM_MAP.reload_resources([])
    reload_global_route_match()


def _ready_upstream(id="u1", **kwargs):
    config = Upstream(id=id, nodes={"127.0.0.1:8080": 1}, **kwargs)
    lb = LoadBalancer(HybridDiscovery.from_upstream(config))
    asyncio.run(lb.update())
    return ProxyUpstream(config, lb)


def _route(id, **kwargs):
    kwargs.setdefault("uri", "/")
    return ProxyRoute(inner=Route(id=id, **kwargs))


def test_match_captures_params():
    matcher = RouteMatcher()
    route = _route("r1", uri="/users/{id}")
    matcher.insert_route(route)
    params, found = matcher.match_request(Request(uri="/users/42"))
    assert found is route
    assert params == {"id": "42"}


def test_host_route_preferred_then_fallback():
    matcher = RouteMatcher()
    with_host = _route("host", uri="/a", hosts=["example.com"])
    without_host = _route("any", uri="/a")
    matcher.insert_route(with_host)
    matcher.insert_route(without_host)
    _, found = matcher.match_request(Request(uri="/a", headers={"Host": "example.com:8080"}))
    assert found is with_host
    _, found = matcher.match_request(Request(uri="/a", headers={"Host": "other.example.com"}))
    assert found is without_host


def test_method_filtering():
    matcher = RouteMatcher()
    matcher.insert_route(_route("post", uri="/a", methods=["POST"]))
    assert matcher.match_request(Request(method="GET", uri="/a")) is None
    _, found = matcher.match_request(Request(method="POST", uri="/a"))
    assert found.id == "post"


def test_priority_orders_same_uri():
    matcher = RouteMatcher()
    low = _route("low", uri="/a", priority=1)
    high = _route("high", uri="/a", priority=10)
    matcher.insert_route(low)
    matcher.insert_route(high)
    _, found = matcher.match_request(Request(uri="/a"))
    assert found is high


def test_lower_priority_used_when_method_differs():
    matcher = RouteMatcher()
    matcher.insert_route(_route("low", uri="/a", priority=1, methods=["GET"]))
    matcher.insert_route(_route("high", uri="/a", priority=10, methods=["POST"]))
    _, found = matcher.match_request(Request(method="GET", uri="/a"))
    assert found.id == "low"


def test_insert_route_invalid_pattern():
    matcher = RouteMatcher()
    with pytest.raises(InsertError):
        matcher.insert_route(_route("bad", uri="/bad/{"))


def test_unmatched_returns_none():
    matcher = RouteMatcher()
    matcher.insert_route(_route("r", uri="/a"))
    assert matcher.match_request(Request(uri="/b")) is None


def test_build_plugin_executor_merges_and_sorts():
    route_plugin = _Tag("p", 1)
    service_same = _Tag("p", 100)
    service_other = _Tag("q", 5)
    SERVICE_MAP.insert_resource(
        ProxyService(inner=Service(id="svc"), plugins=[service_same, service_other])
    )
    route = ProxyRoute(inner=Route(id="r", uri="/", service_id="svc"), plugins=[route_plugin])
    executor = route.build_plugin_executor()
    assert [p.name for p in executor.plugins] == ["q", "p"]
    assert executor.plugins[1] is route_plugin


def test_get_hosts_falls_back_to_service():
    SERVICE_MAP.insert_resource(ProxyService(inner=Service(id="svc", hosts=["example.com"])))
    route = _route("r", service_id="svc")
    assert route.get_hosts() == ["example.com"]
    own = _route("r2", service_id="svc", host="own.example.com")
    assert own.get_hosts() == ["own.example.com"]
    assert _route("r3", service_id="missing").get_hosts() == []


def test_resolve_upstream_order():
    inline = _ready_upstream("inline")
    by_id = _ready_upstream("byid")
    via_service = _ready_upstream("svcup")
    UPSTREAM_MAP.insert_resource(by_id)
    SERVICE_MAP.insert_resource(ProxyService(inner=Service(id="svc"), upstream=via_service))
    route = ProxyRoute(
        inner=Route(id="r", uri="/", upstream_id="byid", service_id="svc"), upstream=inline
    )
    assert route.resolve_upstream() is inline
    route.upstream = None
    assert route.resolve_upstream() is by_id
    route.inner.upstream_id = "missing"
    assert route.resolve_upstream() is via_service
    assert _route("none").resolve_upstream() is None


def test_select_http_peer_applies_route_timeout():
    route = ProxyRoute(
        inner=Route(id="r", uri="/", timeout=Timeout(connect=3, read=4, send=5)),
        upstream=_ready_upstream(),
    )
    peer = route.select_http_peer(Request(uri="/"))
    assert peer.address == "127.0.0.1:8080"
    assert (peer.connection_timeout, peer.read_timeout, peer.write_timeout) == (3.0, 4.0, 5.0)


def test_select_http_peer_without_upstream():
    with pytest.raises(LookupError):
        _route("r").select_http_peer(Request(uri="/"))


def test_from_config_builds_plugins_and_upstream():
    config = Route(
        id="r",
        uri="/",
        plugins={"route-test-tag": {"priority": 7}},
        upstream=Upstream(id="inline", nodes={"127.0.0.1:8080": 1}),
    )
    route = ProxyRoute.from_config(config, False)
    try:
        assert [(p.name, p.priority) for p in route.plugins] == [("route-test-tag", 7)]
        assert route.upstream.inner.nodes == {"127.0.0.1:8080": 1}
        assert route.id == "r"
    finally:
        route.upstream.stop_health_check()


def test_from_config_unknown_plugin():
    with pytest.raises(PluginError):
        ProxyRoute.from_config(Route(id="r", uri="/", plugins={"no-such-plugin": {}}), False)


def test_reload_skips_bad_routes():
    ROUTE_MAP.insert_resource(_route("bad", uri="/bad/{"))
    ROUTE_MAP.insert_resource(_route("good", uri="/good"))
    reload_global_route_match()
    _, found = global_route_match_fetch().match_request(Request(uri="/good"))
    assert found.id == "good"


def test_load_static_routes_replaces_map():
    ROUTE_MAP.insert_resource(_route("old", uri="/old"))
    load_static_routes([Route(id="new", uri="/new")], False)
    assert "old" not in ROUTE_MAP
    assert global_route_match_fetch().match_request(Request(uri="/old")) is None
    _, found = global_route_match_fetch().match_request(Request(uri="/new"))
    assert found.id == "new"


def test_load_static_routes_failure_keeps_map():
    ROUTE_MAP.insert_resource(_route("old", uri="/old"))
    with pytest.raises(PluginError):
        load_static_routes(
            [Route(id="x", uri="/x", plugins={"no-such-plugin": {}})], False
        )
    assert "old" in ROUTE_MAP