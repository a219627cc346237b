"""Routes: request matching by host, URI and method, and the route registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from pingsix.discovery import HttpPeer
from pingsix.models import Route
from pingsix.request import Request, get_request_host
from pingsix.resources import ProxyPlugin, ProxyPluginExecutor, ResourceMap, build_plugin
from pingsix.router import InsertError, Router
from pingsix.service import service_fetch
from pingsix.upstream import ProxyUpstream, upstream_fetch

log = logging.getLogger(__name__)

_RouteList = list["ProxyRoute"]


@dataclass(eq=False)
class ProxyRoute:
    """A route with its inline upstream and built plugins."""

    inner: Route
    upstream: ProxyUpstream | None = None
    plugins: list[ProxyPlugin] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.inner.id

    @classmethod
    def from_config(cls, route: Route, work_stealing: bool) -> ProxyRoute:
        """Build the inline upstream and plugins; raises if either fails."""
        upstream = None
        if route.upstream is not None:
            upstream = ProxyUpstream.from_config(route.upstream, work_stealing)
        try:
            plugins = [build_plugin(name, value) for name, value in route.plugins.items()]
        except Exception:
            if upstream is not None:
                upstream.stop_health_check()
            raise
        return cls(inner=route, upstream=upstream, plugins=plugins)

    def resolve_upstream(self) -> ProxyUpstream | None:
        """Inline upstream, else the one named by ``upstream_id``, else the service's."""
        if self.upstream is not None:
            return self.upstream
        if self.inner.upstream_id is not None:
            upstream = upstream_fetch(self.inner.upstream_id)
            if upstream is not None:
                return upstream
        if self.inner.service_id is not None:
            service = service_fetch(self.inner.service_id)
            if service is not None:
                return service.resolve_upstream()
        return None

    def get_hosts(self) -> list[str]:
        """The route's own hosts, else those of its service."""
        hosts = self.inner.get_hosts()
        if hosts:
            return hosts
        if self.inner.service_id is not None:
            service = service_fetch(self.inner.service_id)
            if service is not None:
                return list(service.inner.hosts)
        return []

    def select_http_peer(self, request: Request) -> HttpPeer:
        """Peer to send the request to, with the route's timeouts applied.

        Raises LookupError when no upstream, backend or peer can be found.
        """
        upstream = self.resolve_upstream()
        if upstream is None:
            raise LookupError("Failed to retrieve upstream configuration for route")
        backend = upstream.select_backend(request)
        if backend is None:
            raise LookupError("Unable to determine backend for the request")
        peer = backend.peer
        if peer is None:
            raise LookupError("Missing selected backend metadata for HttpPeer")
        timeout = self.inner.timeout
        if timeout is not None:
            peer.connection_timeout = float(timeout.connect)
            peer.read_timeout = float(timeout.read)
            peer.write_timeout = float(timeout.send)
        return peer

    def build_plugin_executor(self) -> ProxyPluginExecutor:
        """Route and service plugins, one per name, highest priority first.

        A route plugin wins over a service plugin of the same name.
        """
        service_plugins: list[ProxyPlugin] = []
        if self.inner.service_id is not None:
            service = service_fetch(self.inner.service_id)
            if service is not None:
                service_plugins = list(service.plugins)
        merged: dict[str, ProxyPlugin] = {}
        for plugin in [*self.plugins, *service_plugins]:
            merged.setdefault(plugin.name, plugin)
        ordered = sorted(merged.values(), key=lambda plugin: plugin.priority, reverse=True)
        return ProxyPluginExecutor(ordered)


class RouteMatcher:
    """Finds the route for a request by host, then URI, then method."""

    def __init__(self) -> None:
        self._non_host: Router[_RouteList] = Router()
        self._hosts: Router[Router[_RouteList]] = Router()

    @staticmethod
    def _insert_into(router: Router[_RouteList], uri: str, route: ProxyRoute) -> None:
        found = router.at(uri)
        if found is None:
            router.insert(uri, [route])
            return
        found.value.append(route)
        found.value.sort(key=lambda r: r.inner.priority, reverse=True)

    def insert_route(self, proxy_route: ProxyRoute) -> None:
        """Add a route under each of its hosts and URIs; raises InsertError."""
        hosts = proxy_route.get_hosts()
        uris = proxy_route.inner.get_uris()
        if not hosts:
            for uri in uris:
                self._insert_into(self._non_host, uri, proxy_route)
            return
        # Hosts are stored reversed so that suffixes share a common prefix.
        for host in hosts:
            reversed_host = host[::-1]
            found = self._hosts.at(reversed_host)
            if found is None:
                inner: Router[_RouteList] = Router()
                self._hosts.insert(reversed_host, inner)
            else:
                inner = found.value
            for uri in uris:
                self._insert_into(inner, uri, proxy_route)

    def match_request(self, request: Request) -> tuple[dict[str, str], ProxyRoute] | None:
        """Captured parameters and the matching route, or None."""
        host = get_request_host(request)
        path = request.path
        method = request.method
        log.debug("match request: host=%r, uri=%r, method=%r", host, path, method)
        if host:
            found = self._hosts.at(host[::-1])
            if found is not None:
                result = self._match_uri_method(found.value, path, method)
                if result is not None:
                    return result
        return self._match_uri_method(self._non_host, path, method)

    @staticmethod
    def _match_uri_method(
        router: Router[_RouteList], uri: str, method: str
    ) -> tuple[dict[str, str], ProxyRoute] | None:
        found = router.at(uri)
        if found is None:
            return None
        params = dict(sorted(found.params.items()))
        for route in found.value:
            if not route.inner.methods or method in route.inner.methods:
                return params, route
        return None


ROUTE_MAP: ResourceMap[ProxyRoute] = ResourceMap()
_global_route_match = RouteMatcher()


def global_route_match_fetch() -> RouteMatcher:
    """The matcher built from the current routes."""
    return _global_route_match


def reload_global_route_match() -> None:
    """Rebuild the matcher from ROUTE_MAP; routes that fail to insert are skipped."""
    global _global_route_match
    matcher = RouteMatcher()
    for route in ROUTE_MAP:
        log.debug("Inserting route: %s", route.id)
        try:
            matcher.insert_route(route)
        except InsertError as exc:
            log.error("Failed to insert route %s: %s", route.id, exc)
    _global_route_match = matcher


def load_static_routes(routes: Iterable[Route], work_stealing: bool) -> None:
    """Replace all routes; nothing changes if any of them fails to build."""
    built: list[ProxyRoute] = []
    for route in routes:
        log.info("Configuring Route: %s", route.id)
        try:
            built.append(ProxyRoute.from_config(route, work_stealing))
        except Exception as exc:
            log.error("Failed to configure Route %s: %s", route.id, exc)
            for proxy in built:
                if proxy.upstream is not None:
                    proxy.upstream.stop_health_check()
            raise
    ROUTE_MAP.reload_resources(built)
    reload_global_route_match()