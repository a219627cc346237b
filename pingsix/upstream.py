"""Upstreams: backend selection, health checking and the upstream registry."""

from __future__ import annotations

import abc
import asyncio
import bisect
import contextlib
import dataclasses
import itertools
import logging
import random
import ssl
import threading
import zlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Protocol, Sequence

from pingsix.discovery import Backend, HybridDiscovery
from pingsix.models import (
    ActiveCheckType,
    HealthCheck,
    SelectionType,
    Upstream,
    UpstreamPassHost,
)
from pingsix.request import Request, request_selector_key
from pingsix.resources import ResourceMap

log = logging.getLogger(__name__)

MAX_ITERATIONS = 256
_U64 = 2**64 - 1
_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_KETAMA_POINTS = 160


def _fnv1a(data: bytes) -> int:
    value = _FNV_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV_PRIME) & _U64
    return value


def _split_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


class _Weighted(abc.ABC):
    """Selection over a list where each backend appears as often as its weight."""

    def __init__(self, backends: Sequence[Backend]) -> None:
        self.backends: tuple[Backend, ...] = tuple(backends)
        self.weighted: tuple[int, ...] = tuple(
            index for index, backend in enumerate(self.backends) for _ in range(backend.weight)
        )

    @abc.abstractmethod
    def _next(self, key: bytes) -> int:
        """A 64-bit index derived from the key."""

    def _candidates(self, key: bytes) -> Iterator[Backend]:
        if not self.backends:
            return
        index = self._next(key)
        weighted: Sequence[int] = self.weighted or range(len(self.backends))
        yield self.backends[weighted[index % len(weighted)]]
        while True:
            index = self._next(index.to_bytes(8, "little"))
            yield self.backends[index % len(self.backends)]


class RoundRobin(_Weighted):
    """Weighted round robin; the key is ignored."""

    def __init__(self, backends: Sequence[Backend]) -> None:
        super().__init__(backends)
        self._counter = itertools.count()

    def _next(self, key: bytes) -> int:
        return next(self._counter) & _U64


class RandomSelection(_Weighted):
    """Weighted random choice; the key is ignored."""

    def _next(self, key: bytes) -> int:
        return random.getrandbits(64)


class FnvHash(_Weighted):
    """Weighted selection by the FNV-1a hash of the key."""

    def _next(self, key: bytes) -> int:
        return _fnv1a(key)


class KetamaHashing:
    """Consistent hashing on a ring of points per backend."""

    def __init__(self, backends: Sequence[Backend]) -> None:
        self.backends: tuple[Backend, ...] = tuple(backends)
        points: list[tuple[int, int]] = []
        for index, backend in enumerate(self.backends):
            host, port = _split_addr(backend.addr)
            base = zlib.crc32(f"{host}\0{port}".encode())
            previous = 0
            for _ in range(backend.weight * _KETAMA_POINTS):
                previous = zlib.crc32(previous.to_bytes(4, "little"), base)
                points.append((previous, index))
        points.sort(key=lambda point: point[0])
        self._hashes: list[int] = []
        self._nodes: list[int] = []
        for point_hash, index in points:
            if self._hashes and self._hashes[-1] == point_hash:
                continue
            self._hashes.append(point_hash)
            self._nodes.append(index)

    def _candidates(self, key: bytes) -> Iterator[Backend]:
        if not self._hashes:
            return
        start = bisect.bisect_left(self._hashes, zlib.crc32(key))
        if start == len(self._hashes):
            start = 0
        for index in self._nodes[start:]:
            yield self.backends[index]


_SELECTIONS: dict[SelectionType, type] = {
    SelectionType.ROUNDROBIN: RoundRobin,
    SelectionType.RANDOM: RandomSelection,
    SelectionType.FNV: FnvHash,
    SelectionType.KETAMA: KetamaHashing,
}


@dataclass
class TcpHealthCheck:
    """Healthy when a TCP connection can be opened."""

    timeout: float | None = None
    consecutive_success: int = 1
    consecutive_failure: int = 1

    async def check(self, backend: Backend) -> None:
        """Raise if the backend does not accept a connection."""
        host, port = _split_addr(backend.addr)
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), self.timeout)
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


@dataclass
class HttpHealthCheck:
    """Healthy when a GET request gets an accepted status code."""

    host: str = ""
    tls: bool = False
    path: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    port_override: int | None = None
    verify_cert: bool = True
    timeout: float | None = None
    consecutive_success: int = 1
    consecutive_failure: int = 1
    http_statuses: list[int] = field(default_factory=list)

    def validate(self, status: int) -> None:
        """Raise ValueError unless the status counts as healthy."""
        if self.http_statuses:
            if status not in self.http_statuses:
                raise ValueError("Invalid response")
        elif status != 200:
            raise ValueError(f"non 200 code {status} during http healthcheck")

    def _request_bytes(self) -> bytes:
        headers = {"host": self.host, **self.headers}
        headers.setdefault("connection", "close")
        lines = [f"GET {self.path} HTTP/1.1"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.tls:
            return None
        context = ssl.create_default_context()
        if not self.verify_cert:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def check(self, backend: Backend) -> None:
        """Raise if the backend cannot be reached or answers with a bad status."""
        host, port = _split_addr(backend.addr)
        if self.port_override is not None:
            port = self.port_override
        context = self._ssl_context()
        server_hostname = (self.host or host) if context is not None else None
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=context, server_hostname=server_hostname),
            self.timeout,
        )
        try:
            writer.write(self._request_bytes())
            await writer.drain()
            status_line = await asyncio.wait_for(reader.readline(), self.timeout)
        finally:
            writer.close()
            with contextlib.suppress(OSError, ssl.SSLError):
                await writer.wait_closed()
        parts = status_line.decode("latin-1").split()
        if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
            raise ValueError(f"malformed status line: {status_line!r}")
        self.validate(int(parts[1]))


def _valid_path(path: str) -> bool:
    return bool(path) and not any(
        ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in path
    )


def build_health_check(config: HealthCheck) -> TcpHealthCheck | HttpHealthCheck:
    """Health check described by an upstream's ``checks`` section."""
    active = config.active
    if active.type is ActiveCheckType.TCP:
        tcp = TcpHealthCheck(timeout=float(active.timeout))
        if active.healthy is not None:
            tcp.consecutive_success = active.healthy.successes
        if active.unhealthy is not None:
            tcp.consecutive_failure = active.unhealthy.tcp_failures
        return tcp

    http = HttpHealthCheck(
        host=active.host or "",
        tls=active.type is ActiveCheckType.HTTPS,
        timeout=float(active.timeout),
        verify_cert=active.https_verify_certificate,
    )
    if _valid_path(active.http_path):
        http.path = active.http_path
    else:
        log.warning("Invalid URI path provided for health check: %s", active.http_path)
    for header in active.req_headers:
        name, sep, value = header.partition(":")
        if sep and name.strip():
            http.headers[name.strip().lower()] = value.strip()
    if active.port is not None:
        http.port_override = active.port
    if active.healthy is not None:
        http.consecutive_success = active.healthy.successes
        http.http_statuses = list(active.healthy.http_statuses)
    if active.unhealthy is not None:
        http.consecutive_failure = active.unhealthy.http_failures
    return http


@dataclass
class _Health:
    healthy: bool = True
    counter: int = 0

    def observe(self, ok: bool, threshold: int) -> bool:
        if self.healthy == ok:
            self.counter = 0
            return False
        self.counter += 1
        if self.counter >= threshold:
            self.healthy = ok
            self.counter = 0
            return True
        return False


class _Check(Protocol):
    consecutive_success: int
    consecutive_failure: int

    async def check(self, backend: Backend) -> None: ...


class LoadBalancer:
    """Discovered backends, their health and the selection algorithm over them."""

    def __init__(
        self,
        discovery: Any,
        selection: type = RoundRobin,
        health_check: _Check | None = None,
        health_check_frequency: float | None = None,
    ) -> None:
        self.discovery = discovery
        self.selection = selection
        self.health_check = health_check
        self.health_check_frequency = health_check_frequency
        self._health: dict[Backend, _Health] = {}
        self._selector = selection(())

    @property
    def backends(self) -> tuple[Backend, ...]:
        """Backends known after the last update, in sorted order."""
        return self._selector.backends

    async def update(self) -> None:
        """Run discovery and rebuild the selection; health of kept backends survives."""
        found, _ = await self.discovery.discover()
        ordered = sorted(found)
        if list(self.backends) == ordered:
            return
        self._health = {backend: self._health.get(backend) or _Health() for backend in ordered}
        self._selector = self.selection(ordered)

    def _ready(self, backend: Backend) -> bool:
        health = self._health.get(backend)
        if health is None:
            return self.health_check is None
        return health.healthy

    @staticmethod
    async def _probe(check: _Check, backend: Backend) -> bool:
        try:
            await check.check(backend)
        except Exception as exc:
            log.debug("Health check failed for %s: %s", backend.addr, exc)
            return False
        return True

    async def run_health_check(self) -> None:
        """Probe every backend once and record the outcome."""
        check = self.health_check
        if check is None:
            return
        backends = self.backends
        results = await asyncio.gather(*(self._probe(check, b) for b in backends))
        for backend, ok in zip(backends, results):
            health = self._health.get(backend)
            if health is None:
                continue
            threshold = check.consecutive_success if ok else check.consecutive_failure
            if health.observe(ok, threshold):
                log.info("Backend %s became %s", backend.addr, "healthy" if ok else "unhealthy")

    def select(self, key: bytes | str) -> Backend | None:
        """First ready backend the algorithm offers for the key, or None."""
        if isinstance(key, str):
            key = key.encode()
        selector = self._selector
        for backend in itertools.islice(selector._candidates(key), MAX_ITERATIONS):
            if self._ready(backend):
                return backend
        return None


async def _background(lb: LoadBalancer, stop: threading.Event) -> None:
    try:
        await lb.update()
    except Exception as exc:
        log.error("Failed to update backends: %s", exc)
    frequency = lb.health_check_frequency
    if frequency is None or lb.health_check is None:
        return
    loop = asyncio.get_running_loop()
    while not stop.is_set():
        await lb.run_health_check()
        await loop.run_in_executor(None, stop.wait, frequency)
    log.info("Service exited.")


def _run_background(lb: LoadBalancer, stop: threading.Event) -> None:
    asyncio.run(_background(lb, stop))


class ProxyUpstream:
    """An upstream configuration with its running load balancer."""

    def __init__(self, inner: Upstream, lb: LoadBalancer, work_stealing: bool = False) -> None:
        self.inner = inner
        self.lb = lb
        self.work_stealing = work_stealing
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def id(self) -> str:
        return self.inner.id

    @property
    def retries(self) -> int | None:
        return self.inner.retries

    @property
    def retry_timeout(self) -> int | None:
        return self.inner.retry_timeout

    @classmethod
    def from_config(cls, upstream: Upstream, work_stealing: bool) -> ProxyUpstream:
        """Build the load balancer and start discovery and health checking."""
        discovery = HybridDiscovery.from_upstream(upstream)
        health_check = None
        frequency = None
        if upstream.checks is not None:
            health_check = build_health_check(upstream.checks)
            healthy = upstream.checks.active.healthy
            frequency = float(healthy.interval) if healthy is not None else 1.0
        lb = LoadBalancer(discovery, _SELECTIONS[upstream.type], health_check, frequency)
        proxy = cls(upstream, lb, work_stealing)
        proxy.start_health_check()
        return proxy

    def start_health_check(self) -> None:
        """Start the background discovery and health checks; runs only once."""
        if self._thread is not None:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=_run_background,
            args=(self.lb, self._stop),
            name=f"health check for {self.inner.id}",
            daemon=True,
        )
        self._thread.start()

    def stop_health_check(self) -> None:
        """Ask the background health checks to stop."""
        stop = getattr(self, "_stop", None)
        if stop is not None:
            stop.set()

    def __del__(self) -> None:
        self.stop_health_check()

    def select_backend(self, request: Request) -> Backend | None:
        """Backend for this request, with a private peer carrying the timeouts."""
        key = request_selector_key(request, self.inner.hash_on, self.inner.key)
        log.debug("proxy lb key: %s", key)
        backend = self.lb.select(key)
        if backend is None or backend.peer is None:
            return backend
        peer = dataclasses.replace(backend.peer)
        timeout = self.inner.timeout
        if timeout is not None:
            peer.connection_timeout = float(timeout.connect)
            peer.read_timeout = float(timeout.read)
            peer.write_timeout = float(timeout.send)
        return dataclasses.replace(backend, peer=peer)

    def upstream_host_rewrite(self, upstream_request: Request) -> None:
        """Set the Host header to ``upstream_host`` when pass_host is rewrite."""
        if self.inner.pass_host is UpstreamPassHost.REWRITE and self.inner.upstream_host is not None:
            upstream_request.headers["host"] = self.inner.upstream_host


UPSTREAM_MAP: ResourceMap[ProxyUpstream] = ResourceMap()


def upstream_fetch(id: str) -> ProxyUpstream | None:
    """Upstream with this id, or None."""
    return UPSTREAM_MAP.get(id)


def load_static_upstreams(upstreams: Iterable[Upstream], work_stealing: bool) -> None:
    """Replace all upstreams; nothing changes if any of them fails to build."""
    built: list[ProxyUpstream] = []
    for upstream in upstreams:
        log.info("Configuring Upstream: %s", upstream.id)
        try:
            built.append(ProxyUpstream.from_config(upstream, work_stealing))
        except Exception as exc:
            log.error("Failed to configure Upstream %s: %s", upstream.id, exc)
            for proxy in built:
                proxy.stop_health_check()
            raise
    UPSTREAM_MAP.reload_resources(built)