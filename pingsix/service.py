"""Services: shared upstreams and plugins that routes can refer to."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from pingsix.models import Service
from pingsix.resources import ProxyPlugin, ResourceMap, build_plugin
from pingsix.upstream import ProxyUpstream, upstream_fetch

log = logging.getLogger(__name__)


@dataclass(eq=False)
class ProxyService:
    """A service with its inline upstream and built plugins."""

    inner: Service
    upstream: ProxyUpstream | None = None
    plugins: list[ProxyPlugin] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.inner.id

    @classmethod
    def from_config(cls, service: Service, work_stealing: bool) -> ProxyService:
        """Build the inline upstream and plugins; raises if either fails."""
        upstream = None
        if service.upstream is not None:
            upstream = ProxyUpstream.from_config(service.upstream, work_stealing)
        plugins = [build_plugin(name, value) for name, value in service.plugins.items()]
        return cls(inner=service, upstream=upstream, plugins=plugins)

    def resolve_upstream(self) -> ProxyUpstream | None:
        """The inline upstream, else the one named by ``upstream_id``."""
        if self.upstream is not None:
            return self.upstream
        if self.inner.upstream_id is not None:
            return upstream_fetch(self.inner.upstream_id)
        return None


SERVICE_MAP: ResourceMap[ProxyService] = ResourceMap()


def service_fetch(id: str) -> ProxyService | None:
    """Service with this id, or None."""
    return SERVICE_MAP.get(id)


def load_static_services(services: Iterable[Service], work_stealing: bool) -> None:
    """Replace all services; nothing changes if any of them fails to build."""
    built: list[ProxyService] = []
    for service in services:
        log.info("Configuring Service: %s", service.id)
        try:
            built.append(ProxyService.from_config(service, work_stealing))
        except Exception as exc:
            log.error("Failed to configure Service %s: %s", service.id, exc)
            for proxy in built:
                if proxy.upstream is not None:
                    proxy.upstream.stop_health_check()
            raise
    SERVICE_MAP.reload_resources(built)