import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from pingsix.models import SSL
from pingsix.router import InsertError
from pingsix.ssl import (
    SSL_MAP,
    DynamicCert,
    ProxySSL,
    SslMatcher,
    global_ssl_match_fetch,
    load_static_ssls,
    reload_global_ssl_match,
)


def _make_pem(common_name):
    private = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(private, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = private.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem


@pytest.fixture(scope="module")
def pem():
    return _make_pem("example.com")


@pytest.fixture(autouse=True)
def clean_registry():
    SSL_MAP.reload_resources([])
    reload_global_ssl_match()
    yield
    SSL_MAP.reload_resources([])
    reload_global_ssl_match()


def _common_name(cert):
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def test_valid_entry_parses(pem):
    cert_pem, key_pem = pem
    proxy = ProxySSL.from_config(SSL(id="1", cert=cert_pem, key=key_pem, snis=["example.com"]))
    assert proxy.is_valid()
    assert proxy.id == "1"
    assert _common_name(proxy.cert) == "example.com"
    assert proxy.error is None


def test_invalid_cert_is_recorded(pem):
    _, key_pem = pem
    proxy = ProxySSL.from_config(SSL(id="bad", cert="not a cert", key=key_pem))
    assert not proxy.is_valid()
    assert proxy.cert is None
    assert proxy.cert_error.startswith("Failed to parse cert for bad")
    assert proxy.key_error is None


def test_invalid_key_is_recorded(pem):
    cert_pem, _ = pem
    proxy = ProxySSL.from_config(SSL(id="k", cert=cert_pem, key="not a key"))
    assert not proxy.is_valid()
    assert proxy.key_error.startswith("Failed to parse key for k")


def test_matcher_exact_and_missing(pem):
    cert_pem, key_pem = pem
    proxy = ProxySSL.from_config(SSL(id="1", cert=cert_pem, key=key_pem, snis=["a.example.com"]))
    matcher = SslMatcher()
    matcher.insert_ssl(proxy)
    assert matcher.match_sni("a.example.com") is proxy
    assert matcher.match_sni("b.example.com") is None


def test_matcher_wildcard_is_literal(pem):
    cert_pem, key_pem = pem
    proxy = ProxySSL.from_config(SSL(id="1", cert=cert_pem, key=key_pem, snis=["*.example.com"]))
    matcher = SslMatcher()
    matcher.insert_ssl(proxy)
    assert matcher.match_sni("*.example.com") is proxy
    assert matcher.match_sni("www.example.com") is None


def test_matcher_conflicting_sni_raises(pem):
    cert_pem, key_pem = pem
    first = ProxySSL.from_config(SSL(id="1", cert=cert_pem, key=key_pem, snis=["example.com"]))
    second = ProxySSL.from_config(SSL(id="2", cert=cert_pem, key=key_pem, snis=["example.com"]))
    matcher = SslMatcher()
    matcher.insert_ssl(first)
    with pytest.raises(InsertError):
        matcher.insert_ssl(second)


def test_load_static_ssls_skips_invalid(pem):
    cert_pem, key_pem = pem
    load_static_ssls(
        [
            SSL(id="good", cert=cert_pem, key=key_pem, snis=["good.example.com"]),
            SSL(id="bad", cert="broken", key=key_pem, snis=["bad.example.com"]),
        ]
    )
    assert SSL_MAP.get("good").id == "good"
    assert SSL_MAP.get("bad") is None
    assert global_ssl_match_fetch().match_sni("good.example.com").id == "good"
    assert global_ssl_match_fetch().match_sni("bad.example.com") is None


def test_reload_drops_removed_entries(pem):
    cert_pem, key_pem = pem
    load_static_ssls([SSL(id="1", cert=cert_pem, key=key_pem, snis=["example.com"])])
    assert global_ssl_match_fetch().match_sni("example.com").id == "1"
    SSL_MAP.remove("1")
    reload_global_ssl_match()
    assert global_ssl_match_fetch().match_sni("example.com") is None


def test_dynamic_cert_from_files(tmp_path, pem):
    cert_pem, key_pem = pem
    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_text(cert_pem)
    key_file.write_text(key_pem)
    dynamic = DynamicCert.from_files(cert_file, key_file)
    assert dynamic.default.is_valid()
    assert dynamic.select(None) is dynamic.default
    assert dynamic.select("unknown.example.com") is dynamic.default


def test_dynamic_cert_prefers_matched_entry(tmp_path, pem):
    cert_pem, key_pem = pem
    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_text(cert_pem)
    key_file.write_text(key_pem)
    dynamic = DynamicCert.from_files(cert_file, key_file)
    load_static_ssls([SSL(id="site", cert=cert_pem, key=key_pem, snis=["site.example.com"])])
    assert dynamic.select("site.example.com").id == "site"


def test_dynamic_cert_bad_cert_raises(tmp_path, pem):
    _, key_pem = pem
    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_text("garbage")
    key_file.write_text(key_pem)
    with pytest.raises(ValueError, match="Default SSL certificate parsing failed"):
        DynamicCert.from_files(cert_file, key_file)


def test_dynamic_cert_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        DynamicCert.from_files(tmp_path / "none.pem", tmp_path / "none.key")