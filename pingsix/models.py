"""Configuration models for routes, upstreams, services, global rules and certificates."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, TypeVar

_E = TypeVar("_E", bound=enum.Enum)


class UpstreamScheme(str, enum.Enum):
    """Protocol used to talk to upstream nodes."""

    HTTP = "http"
    HTTPS = "https"
    GRPC = "grpc"
    GRPCS = "grpcs"


class UpstreamPassHost(str, enum.Enum):
    """How the Host header is passed to the upstream."""

    def _generate_next_value_(name, start, count, last_values):  # noqa: N805
        return name.lower()

    PASS = enum.auto()
    REWRITE = enum.auto()


class HashOn(str, enum.Enum):
    """Where the load-balancing key is taken from."""

    VARS = "vars"
    HEAD = "head"
    COOKIE = "cookie"


class SelectionType(str, enum.Enum):
    """Backend selection algorithm."""

    ROUNDROBIN = "roundrobin"
    RANDOM = "random"
    FNV = "fnv"
    KETAMA = "ketama"


class ActiveCheckType(str, enum.Enum):
    """Kind of active health check."""

    TCP = "tcp"
    HTTP = "http"
    HTTPS = "https"


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _int(value: Any, what: str, minimum: int | None = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ValueError(f"{what} must be at least {minimum}, got {value}")
    return value


def _opt_int(value: Any, what: str) -> int | None:
    return None if value is None else _int(value, what)


def _str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string, got {value!r}")
    return value


def _opt_str(value: Any, what: str) -> str | None:
    return None if value is None else _str(value, what)


def _bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{what} must be a boolean, got {value!r}")
    return value


def _str_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{what} must be a list of strings")
    return [_str(item, what) for item in value]


def _enum(cls: type[_E], value: Any, what: str) -> _E:
    try:
        return cls(value)
    except ValueError:
        raise ValueError(f"invalid {what}: {value!r}") from None


def _plugins(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    plugins = _mapping(value, "plugins")
    return {_str(name, "plugin name"): conf for name, conf in plugins.items()}


def _id(data: Mapping[str, Any]) -> str:
    value = data.get("id", "")
    return value if isinstance(value, str) else str(value)


@dataclass(frozen=True)
class Timeout:
    """Connect, read and send timeouts in seconds."""

    connect: int
    read: int
    send: int


def _timeout(value: Any) -> Timeout | None:
    if value is None:
        return None
    data = _mapping(value, "timeout")
    return Timeout(
        connect=_int(data.get("connect"), "timeout.connect"),
        read=_int(data.get("read"), "timeout.read"),
        send=_int(data.get("send"), "timeout.send"),
    )


@dataclass
class HealthyCheck:
    """Conditions that mark a node healthy."""

    interval: int = 1
    http_statuses: list[int] = field(default_factory=lambda: [200, 302])
    successes: int = 2


@dataclass
class UnhealthyCheck:
    """Conditions that mark a node unhealthy."""

    http_failures: int = 5
    tcp_failures: int = 2


@dataclass
class ActiveHealthCheck:
    """Active health check settings."""

    type: ActiveCheckType = ActiveCheckType.HTTP
    timeout: int = 1
    http_path: str = "/"
    host: str | None = None
    port: int | None = None
    https_verify_certificate: bool = True
    req_headers: list[str] = field(default_factory=list)
    healthy: HealthyCheck | None = None
    unhealthy: UnhealthyCheck | None = None


@dataclass
class HealthCheck:
    """Health check configuration of an upstream."""

    active: ActiveHealthCheck = field(default_factory=ActiveHealthCheck)


def _healthy(value: Any) -> HealthyCheck | None:
    if value is None:
        return None
    data = _mapping(value, "healthy")
    default = HealthyCheck()
    statuses = data.get("http_statuses", default.http_statuses)
    if not isinstance(statuses, (list, tuple)):
        raise ValueError("healthy.http_statuses must be a list")
    return HealthyCheck(
        interval=_int(data.get("interval", default.interval), "healthy.interval", 1),
        http_statuses=[_int(s, "healthy.http_statuses") for s in statuses],
        successes=_int(data.get("successes", default.successes), "healthy.successes", 1),
    )


def _unhealthy(value: Any) -> UnhealthyCheck | None:
    if value is None:
        return None
    data = _mapping(value, "unhealthy")
    default = UnhealthyCheck()
    return UnhealthyCheck(
        http_failures=_int(
            data.get("http_failures", default.http_failures), "unhealthy.http_failures", 1
        ),
        tcp_failures=_int(
            data.get("tcp_failures", default.tcp_failures), "unhealthy.tcp_failures", 1
        ),
    )


def _health_check(value: Any) -> HealthCheck | None:
    if value is None:
        return None
    data = _mapping(_mapping(value, "checks").get("active", {}), "checks.active")
    default = ActiveHealthCheck()
    active = ActiveHealthCheck(
        type=_enum(ActiveCheckType, data.get("type", default.type.value), "active check type"),
        timeout=_int(data.get("timeout", default.timeout), "active.timeout"),
        http_path=_str(data.get("http_path", default.http_path), "active.http_path"),
        host=_opt_str(data.get("host"), "active.host"),
        port=_opt_int(data.get("port"), "active.port"),
        https_verify_certificate=_bool(
            data.get("https_verify_certificate", default.https_verify_certificate),
            "active.https_verify_certificate",
        ),
        req_headers=_str_list(data.get("req_headers"), "active.req_headers"),
        healthy=_healthy(data.get("healthy")),
        unhealthy=_unhealthy(data.get("unhealthy")),
    )
    return HealthCheck(active=active)


@dataclass
class Upstream:
    """A set of weighted nodes and the policy for reaching them."""

    id: str = ""
    nodes: dict[str, int] = field(default_factory=dict)
    type: SelectionType = SelectionType.ROUNDROBIN
    scheme: UpstreamScheme = UpstreamScheme.HTTP
    pass_host: UpstreamPassHost = UpstreamPassHost.PASS
    upstream_host: str | None = None
    hash_on: HashOn = HashOn.VARS
    key: str = "uri"
    retries: int | None = None
    retry_timeout: int | None = None
    timeout: Timeout | None = None
    checks: HealthCheck | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Upstream:
        """Build an upstream from decoded JSON or YAML."""
        data = _mapping(data, "upstream")
        nodes = _mapping(data.get("nodes", {}), "upstream.nodes")
        return cls(
            id=_id(data),
            nodes={
                _str(addr, "node address"): _int(weight, f"weight of {addr}")
                for addr, weight in nodes.items()
            },
            type=_enum(SelectionType, data.get("type", cls.type.value), "selection type"),
            scheme=_enum(UpstreamScheme, data.get("scheme", cls.scheme.value), "scheme"),
            pass_host=_enum(
                UpstreamPassHost, data.get("pass_host", cls.pass_host.value), "pass_host"
            ),
            upstream_host=_opt_str(data.get("upstream_host"), "upstream_host"),
            hash_on=_enum(HashOn, data.get("hash_on", cls.hash_on.value), "hash_on"),
            key=_str(data.get("key", cls.key), "key"),
            retries=_opt_int(data.get("retries"), "retries"),
            retry_timeout=_opt_int(data.get("retry_timeout"), "retry_timeout"),
            timeout=_timeout(data.get("timeout")),
            checks=_health_check(data.get("checks")),
        )


def _opt_upstream(value: Any) -> Upstream | None:
    return None if value is None else Upstream.from_dict(value)


@dataclass
class Route:
    """Matching rules for requests and where to send them."""

    id: str = ""
    uri: str | None = None
    uris: list[str] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)
    host: str | None = None
    hosts: list[str] = field(default_factory=list)
    priority: int = 0
    plugins: dict[str, Any] = field(default_factory=dict)
    upstream: Upstream | None = None
    upstream_id: str | None = None
    service_id: str | None = None
    timeout: Timeout | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Route:
        """Build a route from decoded JSON or YAML."""
        data = _mapping(data, "route")
        route = cls(
            id=_id(data),
            uri=_opt_str(data.get("uri"), "uri"),
            uris=_str_list(data.get("uris"), "uris"),
            methods=_str_list(data.get("methods"), "methods"),
            host=_opt_str(data.get("host"), "host"),
            hosts=_str_list(data.get("hosts"), "hosts"),
            priority=_int(data.get("priority", 0), "priority", None),
            plugins=_plugins(data.get("plugins")),
            upstream=_opt_upstream(data.get("upstream")),
            upstream_id=_opt_str(data.get("upstream_id"), "upstream_id"),
            service_id=_opt_str(data.get("service_id"), "service_id"),
            timeout=_timeout(data.get("timeout")),
        )
        if not route.get_uris():
            raise ValueError("route needs uri or uris")
        return route

    def get_hosts(self) -> list[str]:
        """Hosts this route is bound to; empty when it matches any host."""
        return [self.host] if self.host else list(self.hosts)

    def get_uris(self) -> list[str]:
        """URI patterns this route matches."""
        return [self.uri] if self.uri else list(self.uris)


@dataclass
class Service:
    """Shared upstream, hosts and plugins for a group of routes."""

    id: str = ""
    plugins: dict[str, Any] = field(default_factory=dict)
    upstream: Upstream | None = None
    upstream_id: str | None = None
    hosts: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Service:
        """Build a service from decoded JSON or YAML."""
        data = _mapping(data, "service")
        return cls(
            id=_id(data),
            plugins=_plugins(data.get("plugins")),
            upstream=_opt_upstream(data.get("upstream")),
            upstream_id=_opt_str(data.get("upstream_id"), "upstream_id"),
            hosts=_str_list(data.get("hosts"), "hosts"),
        )


@dataclass
class GlobalRule:
    """Plugins that run for every request."""

    id: str = ""
    plugins: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GlobalRule:
        """Build a global rule from decoded JSON or YAML."""
        data = _mapping(data, "global rule")
        return cls(id=_id(data), plugins=_plugins(data.get("plugins")))


@dataclass
class SSL:
    """A PEM certificate and key served for a set of server names."""

    id: str = ""
    cert: str = ""
    key: str = ""
    snis: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SSL:
        """Build a certificate entry from decoded JSON or YAML."""
        data = _mapping(data, "ssl")
        if "cert" not in data or "key" not in data:
            raise ValueError("ssl needs cert and key")
        return cls(
            id=_id(data),
            cert=_str(data["cert"], "cert"),
            key=_str(data["key"], "key"),
            snis=_str_list(data.get("snis"), "snis"),
        )