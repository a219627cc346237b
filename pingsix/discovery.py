"""Static, DNS-based and combined discovery of upstream backends."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Protocol

from pingsix.models import Upstream, UpstreamPassHost, UpstreamScheme

log = logging.getLogger(__name__)

ALPN_H1 = "h1"
ALPN_H2 = "h2"

Resolver = Callable[[str], Awaitable[Iterable[str]]]
DiscoveryResult = tuple[set["Backend"], dict[int, bool]]

_HOST_PORT_RE = re.compile(r"(?:\[(.+?)\]|([^:]+))(?::([0-9]+))?")
_U32_MAX = 2**32 - 1
_TLS_SCHEMES = (UpstreamScheme.HTTPS, UpstreamScheme.GRPCS)
_GRPC_SCHEMES = (UpstreamScheme.GRPC, UpstreamScheme.GRPCS)


class DiscoveryError(Exception):
    """Backends could not be discovered or an address is malformed."""


@dataclass
class HttpPeer:
    """Where and how to connect to one backend."""

    address: str
    tls: bool
    sni: str
    alpn: str = ALPN_H1
    connection_timeout: float | None = None
    read_timeout: float | None = None
    write_timeout: float | None = None


@dataclass(frozen=True, order=True)
class Backend:
    """A backend address with its weight; equality ignores the peer."""

    addr: str
    weight: int = 1
    peer: HttpPeer | None = field(default=None, compare=False, hash=False)


class _Discovery(Protocol):
    async def discover(self) -> DiscoveryResult: ...


def parse_host_and_port(addr: str) -> tuple[str, int | None]:
    """Split ``host[:port]``; IPv6 hosts come back in square brackets."""
    found = _HOST_PORT_RE.fullmatch(addr)
    if found is None:
        raise DiscoveryError("Invalid address format")
    host = found.group(1) if found.group(1) is not None else found.group(2)
    port: int | None = None
    if found.group(3) is not None:
        port = int(found.group(3))
        if port > _U32_MAX:
            raise DiscoveryError("Invalid port")
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return host, port


def _as_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _socket_addr(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, port: int) -> str:
    port &= 0xFFFF
    if ip.version == 6:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _make_backend(addr: str, weight: int, scheme: UpstreamScheme, sni: str) -> Backend:
    tls = scheme in _TLS_SCHEMES
    alpn = ALPN_H2 if scheme in _GRPC_SCHEMES else ALPN_H1
    return Backend(addr, weight, HttpPeer(addr, tls, sni, alpn))


async def _system_resolve(domain: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(domain, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


class StaticDiscovery:
    """A fixed set of backends."""

    def __init__(self, backends: Iterable[Backend]) -> None:
        self.backends: set[Backend] = set(backends)

    async def discover(self) -> DiscoveryResult:
        return set(self.backends), {}


class DnsDiscovery:
    """Resolves a domain and makes one backend per address."""

    def __init__(
        self,
        domain: str,
        port: int,
        scheme: UpstreamScheme,
        weight: int,
        resolver: Resolver | None = None,
    ) -> None:
        self.domain = domain
        self.port = port
        self.scheme = scheme
        self.weight = weight
        self.resolver: Resolver = resolver or _system_resolve

    async def discover(self) -> DiscoveryResult:
        log.debug("Resolving DNS for domain: %s", self.domain)
        try:
            ips = [ipaddress.ip_address(ip) for ip in await self.resolver(self.domain)]
        except Exception as exc:
            log.warning("DNS discovery failed for domain: %s: %s", self.domain, exc)
            raise DiscoveryError(
                f"DNS discovery failed for domain: {self.domain}: {exc}"
            ) from exc
        backends = {
            _make_backend(_socket_addr(ip, self.port), self.weight, self.scheme, self.domain)
            for ip in ips
        }
        return backends, {}


class HybridDiscovery:
    """Runs several discoveries together and merges what they find."""

    def __init__(self, discoveries: Iterable[_Discovery] = ()) -> None:
        self.discoveries: list[_Discovery] = list(discoveries)

    async def discover(self) -> DiscoveryResult:
        """Merged backends; a failing discovery is logged and left out."""
        results = await asyncio.gather(
            *(discovery.discover() for discovery in self.discoveries),
            return_exceptions=True,
        )
        backends: set[Backend] = set()
        health: dict[int, bool] = {}
        for result in results:
            if isinstance(result, Exception):
                log.warning("Hybrid discovery failed: %s", result)
                continue
            if isinstance(result, BaseException):
                raise result
            part_backends, part_health = result
            backends.update(part_backends)
            health.update(part_health)
        return backends, health

    @classmethod
    def from_upstream(cls, upstream: Upstream) -> HybridDiscovery:
        """IP nodes become static backends; domain nodes are resolved by DNS."""
        this = cls()
        backends: set[Backend] = set()
        for addr, weight in upstream.nodes.items():
            host, port = parse_host_and_port(addr)
            if port is None:
                port = 443 if upstream.scheme in _TLS_SCHEMES else 80
            ip = _as_ip(host)
            if ip is None:
                this.discoveries.append(DnsDiscovery(host, port, upstream.scheme, weight))
                continue
            if upstream.pass_host is UpstreamPassHost.REWRITE:
                sni = upstream.upstream_host or host
            else:
                sni = host
            backends.add(_make_backend(_socket_addr(ip, port), weight, upstream.scheme, sni))
        if backends:
            this.discoveries.append(StaticDiscovery(backends))
        return this