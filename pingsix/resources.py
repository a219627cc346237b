"""Plugin interface, plugin executor, per-request context and resource maps."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Iterator, Protocol, TypeVar

log = logging.getLogger(__name__)


class PluginError(Exception):
    """A plugin could not be built."""


class ProxyPlugin:
    """Base class for plugins; every hook defaults to doing nothing."""

    name: str = ""
    priority: int = 0

    async def early_request_filter(self, request: Any, ctx: ProxyContext) -> None:
        return None

    async def request_filter(self, request: Any, ctx: ProxyContext) -> bool:
        """Return True when the plugin has answered the request itself."""
        return False

    async def upstream_request_filter(
        self, request: Any, upstream_request: Any, ctx: ProxyContext
    ) -> None:
        return None

    async def response_filter(
        self, request: Any, upstream_response: Any, ctx: ProxyContext
    ) -> None:
        return None

    def response_body_filter(
        self, request: Any, body: bytes | None, end_of_stream: bool, ctx: ProxyContext
    ) -> bytes | None:
        """Return the body chunk to pass on."""
        return body

    async def logging(self, request: Any, error: BaseException | None, ctx: ProxyContext) -> None:
        return None


_PLUGIN_FACTORIES: dict[str, Callable[[Any], ProxyPlugin]] = {}
_REGISTRY_LOCK = threading.Lock()


def register_plugin(name: str, factory: Callable[[Any], ProxyPlugin]) -> None:
    """Make a plugin buildable under ``name``; factory receives its configuration."""
    with _REGISTRY_LOCK:
        _PLUGIN_FACTORIES[name] = factory


def build_plugin(name: str, config: Any) -> ProxyPlugin:
    """Build a registered plugin from its configuration."""
    with _REGISTRY_LOCK:
        factory = _PLUGIN_FACTORIES.get(name)
    if factory is None:
        raise PluginError(f"unknown plugin: {name}")
    try:
        return factory(config)
    except PluginError:
        raise
    except Exception as exc:
        raise PluginError(f"failed to build plugin {name}: {exc}") from exc


class ProxyPluginExecutor(ProxyPlugin):
    """Runs a list of plugins, already sorted by priority, one after another."""

    name = "plugin-executor"
    priority = 0

    def __init__(self, plugins: Iterable[ProxyPlugin] = ()) -> None:
        self.plugins: list[ProxyPlugin] = list(plugins)

    async def early_request_filter(self, request: Any, ctx: ProxyContext) -> None:
        for plugin in self.plugins:
            await plugin.early_request_filter(request, ctx)

    async def request_filter(self, request: Any, ctx: ProxyContext) -> bool:
        for plugin in self.plugins:
            if await plugin.request_filter(request, ctx):
                return True
        return False

    async def upstream_request_filter(
        self, request: Any, upstream_request: Any, ctx: ProxyContext
    ) -> None:
        for plugin in self.plugins:
            await plugin.upstream_request_filter(request, upstream_request, ctx)

    async def response_filter(
        self, request: Any, upstream_response: Any, ctx: ProxyContext
    ) -> None:
        for plugin in self.plugins:
            await plugin.response_filter(request, upstream_response, ctx)

    def response_body_filter(
        self, request: Any, body: bytes | None, end_of_stream: bool, ctx: ProxyContext
    ) -> bytes | None:
        for plugin in self.plugins:
            body = plugin.response_body_filter(request, body, end_of_stream, ctx)
        return body

    async def logging(self, request: Any, error: BaseException | None, ctx: ProxyContext) -> None:
        for plugin in self.plugins:
            await plugin.logging(request, error, ctx)


_DEFAULT_EXECUTOR = ProxyPluginExecutor()


def _default_executor() -> ProxyPluginExecutor:
    return _DEFAULT_EXECUTOR


@dataclass
class ProxyContext:
    """State carried through the phases of one proxied request."""

    route: Any = None
    route_params: dict[str, str] | None = None
    tries: int = 0
    request_start: float = field(default_factory=time.monotonic)
    plugin: ProxyPluginExecutor = field(default_factory=_default_executor)
    global_plugin: ProxyPluginExecutor = field(default_factory=_default_executor)
    vars: dict[str, str] = field(default_factory=dict)


class _Identifiable(Protocol):
    @property
    def id(self) -> str: ...


T = TypeVar("T", bound=_Identifiable)


class ResourceMap(Generic[T]):
    """Thread-safe map of resources keyed by their ``id``."""

    def __init__(self) -> None:
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, id: str) -> T | None:
        """Resource with this id, or None."""
        with self._lock:
            item = self._items.get(id)
        if item is None:
            log.warning("Resource with id '%s' not found", id)
        return item

    def reload_resources(self, resources: Iterable[T]) -> None:
        """Replace the contents: drop ids not given, insert or update the rest."""
        resources = list(resources)
        for resource in resources:
            log.info("Upstream resource: %s", resource.id)
        valid_ids = {resource.id for resource in resources}
        with self._lock:
            for key in [key for key in self._items if key not in valid_ids]:
                del self._items[key]
            for resource in resources:
                log.info("Inserting or updating resource '%s'", resource.id)
                self._items[resource.id] = resource

    def insert_resource(self, resource: T) -> None:
        """Insert or replace one resource."""
        log.info("Inserting resource '%s'", resource.id)
        with self._lock:
            self._items[resource.id] = resource

    def remove(self, id: str) -> T | None:
        """Remove and return the resource with this id, if present."""
        with self._lock:
            return self._items.pop(id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, id: object) -> bool:
        with self._lock:
            return id in self._items

    def __iter__(self) -> Iterator[T]:
        """Iterate over a snapshot of the stored resources."""
        with self._lock:
            return iter(list(self._items.values()))