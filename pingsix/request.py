"""Incoming request model and helpers for reading values out of it."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from pingsix.models import HashOn

log = logging.getLogger(__name__)


@dataclass
class Request:
    """An HTTP request head plus the addresses of the connection.

    Header names are stored lower-cased in ``headers``.
    """

    method: str = "GET"
    uri: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    client_addr: str | None = None
    server_addr: str | None = None

    def __post_init__(self) -> None:
        self.headers = {name.lower(): value for name, value in self.headers.items()}

    def header(self, name: str) -> str | None:
        """Value of a header, looked up case-insensitively."""
        return self.headers.get(name.lower())

    @property
    def path(self) -> str:
        return urlsplit(self.uri).path or "/"

    @property
    def query(self) -> str | None:
        if "?" not in self.uri:
            return None
        return urlsplit(self.uri).query


def _uri_host(uri: str) -> str:
    host = urlsplit(uri).netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        return host if end == -1 else host[: end + 1]
    return host.partition(":")[0]


def _split_inet(addr: str | None) -> tuple[str, int] | None:
    if not addr:
        return None
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return None
    return host, int(port)


def request_selector_key(request: Request, hash_on: HashOn, key: str) -> str:
    """Value from the request used as the load-balancing key."""
    if hash_on is HashOn.VARS:
        return _handle_vars(request, key)
    if hash_on is HashOn.HEAD:
        return get_req_header_value(request, key) or ""
    return get_cookie_value(request, key) or ""


def _handle_vars(request: Request, key: str) -> str:
    if key.startswith("arg_"):
        return get_query_value(request, key[len("arg_"):]) or ""
    if key == "uri":
        return request.path
    if key == "request_uri":
        query = request.query
        return request.path if query is None else f"{request.path}?{query}"
    if key == "query_string":
        return request.query or ""
    if key == "remote_addr":
        return request.client_addr or ""
    if key == "remote_port":
        inet = _split_inet(request.client_addr)
        return str(inet[1]) if inet else ""
    if key == "server_addr":
        return request.server_addr or ""
    log.warning("Unsupported variable key for hashing: %s", key)
    return ""


def get_query_value(request: Request, name: str) -> str | None:
    """First value of a query parameter; a bare key yields an empty string."""
    query = request.query
    if query is None:
        return None
    for pair in query.split("&"):
        if "=" in pair:
            k, v = pair.split("=", 1)
            if k == name:
                return v.strip()
        elif pair == name:
            return ""
    return None


def remove_query_from_header(request: Request, name: str) -> None:
    """Drop a query parameter from the request URI, leaving only path and query.

    Raises ValueError if the rebuilt URI is not a valid request target.
    """
    query = request.query
    if query is None:
        return
    kept = "&".join(item for item in query.split("&") if item.partition("=")[0] != name)
    new_uri = f"{request.path}?{kept}" if kept else request.path
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in new_uri):
        raise ValueError(f"invalid uri: {new_uri!r}")
    request.uri = new_uri


def get_req_header_value(request: Request, key: str) -> str | None:
    """Value of a request header, or None if absent."""
    return request.header(key)


def get_cookie_value(request: Request, cookie_name: str) -> str | None:
    """First value of a cookie from the Cookie header."""
    cookies = get_req_header_value(request, "Cookie")
    if cookies is None:
        log.debug("No Cookie header found.")
        return None
    for item in cookies.split(";"):
        k, sep, v = item.strip().partition("=")
        if sep and k.strip() == cookie_name:
            return v.strip()
    log.debug("Cookie '%s' not found within Cookie header.", cookie_name)
    return None


def get_request_host(request: Request) -> str | None:
    """Host from the URI, else from the Host header without its port."""
    host = _uri_host(request.uri)
    if host:
        return host
    header = request.header("host")
    if header is not None:
        return header.split(":", 1)[0]
    return None


def get_client_ip(request: Request) -> str:
    """Client IP from X-Forwarded-For, X-Real-IP or the connection, else ''."""
    forwarded = request.header("x-forwarded-for")
    if forwarded is not None:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    real_ip = request.header("x-real-ip")
    if real_ip is not None and real_ip.strip():
        return real_ip.strip()
    if request.client_addr is not None:
        inet = _split_inet(request.client_addr)
        return inet[0] if inet else ""
    log.warning("Could not determine client IP address.")
    return ""