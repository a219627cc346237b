"""Applies configuration store events to the in-memory resource registries."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from pingsix.global_rule import GLOBAL_RULE_MAP, ProxyGlobalRule, reload_global_plugin
from pingsix.models import SSL, GlobalRule, Route, Service, Upstream
from pingsix.resources import ResourceMap
from pingsix.route import ROUTE_MAP, ProxyRoute, reload_global_route_match
from pingsix.service import SERVICE_MAP, ProxyService
from pingsix.ssl import SSL_MAP, ProxySSL, reload_global_ssl_match
from pingsix.upstream import UPSTREAM_MAP, ProxyUpstream

log = logging.getLogger(__name__)


class EventType(enum.Enum):
    """Kind of change reported by a watch."""

    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class KeyValue:
    """A stored key with its JSON value."""

    key: bytes
    value: bytes = b""


@dataclass(frozen=True)
class Event:
    """A watch event; ``kv`` may be missing."""

    type: EventType
    kv: KeyValue | None = None


@dataclass(frozen=True)
class _Kind:
    key_type: str
    model: Callable[[Any], Any]
    resources: ResourceMap
    create: Callable[[Any, bool], Any]
    reload: Callable[[], None] | None


# Order matters for list responses: resources come before what refers to them.
_KINDS: dict[str, _Kind] = {
    kind.key_type: kind
    for kind in (
        _Kind("ssls", SSL.from_dict, SSL_MAP,
              lambda ssl, _ws: ProxySSL.from_config(ssl), reload_global_ssl_match),
        _Kind("upstreams", Upstream.from_dict, UPSTREAM_MAP, ProxyUpstream.from_config, None),
        _Kind("services", Service.from_dict, SERVICE_MAP, ProxyService.from_config, None),
        _Kind("global_rules", GlobalRule.from_dict, GLOBAL_RULE_MAP,
              lambda rule, _ws: ProxyGlobalRule.from_config(rule), reload_global_plugin),
        _Kind("routes", Route.from_dict, ROUTE_MAP, ProxyRoute.from_config,
              reload_global_route_match),
    )
}


def _show(key: bytes | str) -> str:
    return key.decode("utf-8", "replace") if isinstance(key, bytes) else key


def parse_key(key: bytes | str) -> tuple[str, str]:
    """Split a key of the form ``/prefix/resource_type/id`` into (id, resource_type)."""
    if isinstance(key, bytes):
        try:
            key = key.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"Invalid key encoding: {exc}") from exc
    parts = key.split("/")
    if len(parts) < 3:
        raise ValueError(f"Invalid key format: {key}")
    return parts[-1], parts[-2]


def _decode(kind: _Kind, value: bytes) -> Any:
    return kind.model(json.loads(value))


class ProxyEventHandler:
    """Keeps the registries in step with the configuration store.

    Resources that fail to decode or build are logged and skipped.
    """

    def __init__(self, work_stealing: bool = False) -> None:
        self.work_stealing = work_stealing

    def handle_event(self, event: Event) -> None:
        """Apply one PUT or DELETE event."""
        if event.kv is None:
            log.warning("Event does not contain a key-value pair")
            return
        shown = _show(event.kv.key)
        try:
            id_, key_type = parse_key(event.kv.key)
        except ValueError as exc:
            log.error(
                "Failed to parse key during %s event: %s: %s", event.type.name, shown, exc
            )
            return
        kind = _KINDS.get(key_type)

        if event.type is EventType.PUT:
            log.info("Processing PUT event for key: %s", shown)
            if kind is None:
                log.warning("Unhandled PUT event for key type: %s", key_type)
                return
            self._put(kind, id_, event.kv.value)
        else:
            log.info("Processing DELETE event for %s: %s", key_type, id_)
            if kind is None:
                log.warning("Unhandled DELETE event for key type: %s", key_type)
                return
            kind.resources.remove(id_)
        if kind.reload is not None:
            kind.reload()

    def _put(self, kind: _Kind, id_: str, value: bytes) -> None:
        try:
            resource = _decode(kind, value)
        except (ValueError, TypeError) as exc:
            log.error("Failed to deserialize resource of type %s: %s", kind.key_type, exc)
            return
        if not resource.id:
            resource.id = id_
        log.info("Handling %s: %s", kind.key_type, id_)
        try:
            proxy = kind.create(resource, self.work_stealing)
        except Exception as exc:
            log.error("Failed to create proxy for %s %s: %s", kind.key_type, id_, exc)
            return
        kind.resources.insert_resource(proxy)

    def handle_list_response(self, kvs: Iterable[KeyValue]) -> None:
        """Replace every registry with the resources in a full listing."""
        entries = list(kvs)
        for kind in _KINDS.values():
            self._reload_kind(kind, entries)

    def _reload_kind(self, kind: _Kind, entries: list[KeyValue]) -> None:
        resources = []
        for kv in entries:
            try:
                id_, key_type = parse_key(kv.key)
            except ValueError:
                continue
            if key_type != kind.key_type:
                continue
            try:
                resource = _decode(kind, kv.value)
            except (ValueError, TypeError) as exc:
                log.error("Failed to load etcd %s: %s %s", kind.key_type, id_, exc)
                continue
            resource.id = id_
            resources.append(resource)

        proxies = []
        for resource in resources:
            existing = kind.resources.get(resource.id)
            if existing is not None and existing.inner == resource:
                proxies.append(existing)
                continue
            log.info("Configuring %s: %s", kind.key_type, resource.id)
            try:
                proxies.append(kind.create(resource, self.work_stealing))
            except Exception as exc:
                log.error(
                    "Failed to create proxy for %s %s: %s", kind.key_type, resource.id, exc
                )
        kind.resources.reload_resources(proxies)
        if kind.reload is not None:
            kind.reload()