"""TLS certificates chosen by server name (SNI) and the certificate registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from pingsix.models import SSL
from pingsix.resources import ResourceMap
from pingsix.router import Router

log = logging.getLogger(__name__)

DEFAULT_SERVER_NAME = "*"


@dataclass(eq=False)
class ProxySSL:
    """A certificate entry with its parsed certificate and private key.

    Parsing failures are kept as messages rather than raised, so that an
    entry with a broken certificate can still be stored and reported.
    """

    inner: SSL
    cert: x509.Certificate | None = None
    key: Any = None
    cert_error: str | None = None
    key_error: str | None = None

    @property
    def id(self) -> str:
        return self.inner.id

    @classmethod
    def from_config(cls, ssl: SSL) -> ProxySSL:
        """Parse the PEM certificate and key of an entry."""
        proxy = cls(inner=ssl)
        try:
            proxy.cert = x509.load_pem_x509_certificate(ssl.cert.encode())
        except Exception as exc:
            proxy.cert_error = f"Failed to parse cert for {ssl.id}: {exc}"
        try:
            proxy.key = serialization.load_pem_private_key(ssl.key.encode(), password=None)
        except Exception as exc:
            proxy.key_error = f"Failed to parse key for {ssl.id}: {exc}"
        return proxy

    def is_valid(self) -> bool:
        """True when both the certificate and the key were parsed."""
        return self.cert is not None and self.key is not None

    @property
    def error(self) -> str | None:
        """The first parsing error, if any."""
        return self.cert_error or self.key_error

    def get_snis(self) -> list[str]:
        return list(self.inner.snis)


class SslMatcher:
    """Finds the certificate entry for a server name."""

    def __init__(self) -> None:
        self._snis: Router[ProxySSL] = Router()

    def insert_ssl(self, proxy_ssl: ProxySSL) -> None:
        """Register an entry under each of its SNIs; raises InsertError on conflict."""
        for sni in proxy_ssl.get_snis():
            # Names are stored reversed so that suffixes share a common prefix.
            self._snis.insert(sni[::-1], proxy_ssl)

    def match_sni(self, sni: str) -> ProxySSL | None:
        """The entry registered for this server name, or None."""
        log.debug("match sni: sni=%r", sni)
        found = self._snis.at(sni[::-1])
        return None if found is None else found.value


SSL_MAP: ResourceMap[ProxySSL] = ResourceMap()
_global_ssl_match = SslMatcher()


def global_ssl_match_fetch() -> SslMatcher:
    """The matcher built from the current certificate entries."""
    return _global_ssl_match


def reload_global_ssl_match() -> None:
    """Rebuild the matcher from SSL_MAP; raises InsertError on conflicting SNIs."""
    global _global_ssl_match
    matcher = SslMatcher()
    for proxy_ssl in SSL_MAP:
        log.debug("Inserting ssl: %s", proxy_ssl.id)
        matcher.insert_ssl(proxy_ssl)
    _global_ssl_match = matcher


def load_static_ssls(ssls: Iterable[SSL]) -> None:
    """Replace all certificate entries, leaving out those that fail to parse."""
    built: list[ProxySSL] = []
    for ssl in ssls:
        log.info("Configuring ssl: %s", ssl.id)
        proxy_ssl = ProxySSL.from_config(ssl)
        if proxy_ssl.is_valid():
            built.append(proxy_ssl)
        else:
            log.error("%s", proxy_ssl.error)
    SSL_MAP.reload_resources(built)
    reload_global_ssl_match()


class DynamicCert:
    """Picks a certificate per connection by SNI, with a default fallback."""

    def __init__(self, default: ProxySSL) -> None:
        if default.cert_error is not None:
            raise ValueError(f"Default SSL certificate parsing failed: {default.cert_error}")
        if default.key_error is not None:
            raise ValueError(f"Default SSL key parsing failed: {default.key_error}")
        self.default = default

    @classmethod
    def from_files(cls, cert_path: str | Path, key_path: str | Path) -> DynamicCert:
        """Load the default certificate and key from PEM files.

        Raises OSError when a file cannot be read and ValueError when it
        is not valid UTF-8 or cannot be parsed.
        """
        cert = Path(cert_path).read_bytes().decode("utf-8")
        key = Path(key_path).read_bytes().decode("utf-8")
        return cls(ProxySSL.from_config(SSL(id="", cert=cert, key=key, snis=[])))

    def select(self, server_name: str | None) -> ProxySSL:
        """Entry matching the server name, else the default.

        A matched entry is returned even if it failed to parse; callers
        check ``is_valid`` before using it.
        """
        sni = server_name if server_name is not None else DEFAULT_SERVER_NAME
        matched = global_ssl_match_fetch().match_sni(sni)
        proxy_ssl = matched if matched is not None else self.default
        if not proxy_ssl.is_valid():
            log.error("%s", proxy_ssl.error)
        return proxy_ssl