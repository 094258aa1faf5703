"""Shared fixtures for the samlconf test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

FEED_URL = "https://github.com/derricksmith/phpsaml/releases.atom"
RELEASE_URL = "https://github.com/derricksmith/phpsaml/releases/tag/v1.3.0"

ATOM_FEED = f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom" xml:lang="en-US">
  <id>tag:github.com,2008:https://github.com/derricksmith/phpsaml/releases</id>
  <title>Release notes from phpsaml</title>
  <entry>
    <id>tag:github.com,2008:Repository/1/v1.3.0</id>
    <link rel="alternate" type="text/html" href="{RELEASE_URL}"/>
    <title>Release 1.3.0</title>
  </entry>
  <entry>
    <id>tag:github.com,2008:Repository/1/v1.2.1</id>
    <link rel="alternate" type="text/html" href="https://example.invalid/v1.2.1"/>
    <title>Release 1.2.1</title>
  </entry>
</feed>
"""

CertificateFactory = Callable[..., tuple[str, str]]


def _build_certificate(
    *,
    common_name: str = "sp.example.test",
    issuer_common_name: str = "Example Issuing CA",
    issuer_organization: str = "Example Org",
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
) -> tuple[str, str]:
    """Return a ``(certificate PEM, PKCS8 private key PEM)`` pair."""
    now = datetime.now(UTC)
    valid_to = valid_to or (now + timedelta(days=90))
    valid_from = valid_from or min(now - timedelta(days=1), valid_to - timedelta(days=30))
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_organization),
            x509.NameAttribute(NameOID.COMMON_NAME, issuer_common_name),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


@pytest.fixture
def certificate_factory() -> CertificateFactory:
    """Expose the certificate builder so tests can tweak names and dates."""
    return _build_certificate


@pytest.fixture
def certificate_pair() -> tuple[str, str]:
    """Provide a valid certificate and its PKCS8 private key."""
    return _build_certificate()


@pytest.fixture
def valid_record(certificate_pair: tuple[str, str]) -> dict[str, str]:
    """Provide a complete configuration record with every value acceptable."""
    cert, key = certificate_pair
    return {
        "enforced": "0",
        "strict": "1",
        "debug": "0",
        "jit": "1",
        "saml_sp_certificate": cert,
        "saml_sp_certificate_key": key,
        "saml_sp_nameid_format": "emailAddress",
        "saml_idp_entity_id": "https://idp.example.test/metadata",
        "saml_idp_single_sign_on_service": "https://idp.example.test/sso",
        "saml_idp_single_logout_service": "https://idp.example.test/slo",
        "saml_idp_certificate": cert,
        "requested_authn_context": "PasswordProtectedTransport,X509",
        "requested_authn_context_comparison": "exact",
        "saml_security_nameidencrypted": "0",
        "saml_security_authnrequestssigned": "1",
        "saml_security_logoutrequestsigned": "0",
        "saml_security_logoutresponsesigned": "1",
        "id": "1",
        "version": "1.2.1",
    }


def _make_feed_client(
    body: str = ATOM_FEED,
    *,
    status_code: int = 200,
    calls: list[httpx.Request] | None = None,
) -> httpx.Client:
    """Return an ``httpx.Client`` whose transport serves *body*."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status_code, text=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _make_failing_client() -> httpx.Client:
    """Return an ``httpx.Client`` that fails every request at the transport."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def feed_client() -> httpx.Client:
    """Provide a client serving the sample release feed."""
    return _make_feed_client()


@pytest.fixture
def feed_client_factory() -> Callable[..., httpx.Client]:
    """Build clients serving custom feed bodies or status codes."""
    return _make_feed_client


@pytest.fixture
def failing_feed_client() -> httpx.Client:
    """Provide a client whose requests never reach a server."""
    return _make_failing_client()


@pytest.fixture
def atom_feed() -> str:
    """Return the sample release feed document."""
    return ATOM_FEED


@pytest.fixture
def release_url() -> str:
    """Return the link of the newest sample release."""
    return RELEASE_URL
