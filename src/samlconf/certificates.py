"""Certificate string inspection for SAML configuration fields.

Certificates arrive as pasted form values, frequently with their line breaks
mangled by form transport. :func:`parse_certificate` normalises the string,
checks the PEM markers and, when the structure looks right, decodes it with
``cryptography`` to extract the details shown next to the form field.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID

_LINE_BREAKS = re.compile(r"\r\n|\r|\n|\\r\\n|\\r|\\n")
_BEGIN_MARKER = re.compile(r"-+BEGIN CERTIFICATE-+")
_END_MARKER = re.compile(r"-+END CERTIFICATE-+")
_CERTIFICATE_PARTS = re.compile(r"(-+BEGIN CERTIFICATE-+)(.+?)(-+END CERTIFICATE-+)")

_SECONDS_PER_DAY = 86400
_PEM_LINE_WIDTH = 64


class CertificateLogic(Enum):
    """Outcome of decoding the reconstructed certificate."""

    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"

    def __bool__(self) -> bool:
        return self is CertificateLogic.VALID


@dataclass(frozen=True)
class CertificateDetails:
    """Read-only projection of a decoded certificate."""

    common_name: str | None
    issuer_organization: str | None
    issuer_common_name: str | None


@dataclass(frozen=True)
class CertificateParseResult:
    """Everything learned about a certificate string.

    Derived fields are ``None`` whenever an earlier stage failed so callers
    can treat "no details" uniformly.
    """

    begin_tag_present: bool
    end_tag_present: bool
    semantics_valid: bool
    logic_valid: CertificateLogic
    certificate: str
    details: CertificateDetails | None = None
    valid_from: str | None = None
    valid_to: str | None = None
    days_remaining: int | None = None

    @property
    def markers_present(self) -> bool:
        """Return ``True`` when both PEM markers were found."""
        return self.begin_tag_present and self.end_tag_present

    @property
    def flags(self) -> dict[str, object]:
        """Return the marker/semantics/logic flags keyed by their report names."""
        return {
            "BEGIN_TAG_PRESENT": self.begin_tag_present,
            "END_TAG_PRESENT": self.end_tag_present,
            "CERT_SEMANTICS_VALID": self.semantics_valid,
            "CERT_LOGIC_VALID": self.logic_valid.value,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the result."""
        details = None
        if self.details is not None:
            details = {
                "cn": self.details.common_name,
                "issuer_o": self.details.issuer_organization,
                "issuer_cn": self.details.issuer_common_name,
            }
        return {
            "flags": self.flags,
            "certificate": self.certificate,
            "details": details,
            "valid_from": self.valid_from,
            "valid_to": self.valid_to,
            "days_remaining": self.days_remaining,
        }


def strip_line_breaks(value: str) -> str:
    """Remove real and escaped (``\\r``/``\\n``) line breaks from *value*."""
    return _LINE_BREAKS.sub("", value)


def parse_certificate(raw: str, *, now: datetime | None = None) -> CertificateParseResult:
    """Validate and parse a PEM-ish certificate string. Never raises."""
    cert = strip_line_breaks(raw or "")
    begin_present = _BEGIN_MARKER.search(cert) is not None
    end_present = _END_MARKER.search(cert) is not None

    match = _CERTIFICATE_PARTS.search(cert)
    if match is None:
        return CertificateParseResult(
            begin_tag_present=begin_present,
            end_tag_present=end_present,
            semantics_valid=False,
            logic_valid=CertificateLogic.INVALID,
            certificate=cert,
        )

    # Canonical form: header, payload and footer on their own lines.
    cert = "\n".join(match.groups())

    try:
        decoded = x509.load_pem_x509_certificate(_wrap_pem(*match.groups()).encode("ascii"))
    except UnsupportedAlgorithm:
        return CertificateParseResult(
            begin_tag_present=begin_present,
            end_tag_present=end_present,
            semantics_valid=True,
            logic_valid=CertificateLogic.UNKNOWN,
            certificate=cert,
        )
    except (ValueError, TypeError):
        # UnicodeEncodeError is a ValueError; non-ASCII payloads fail here too.
        return CertificateParseResult(
            begin_tag_present=begin_present,
            end_tag_present=end_present,
            semantics_valid=True,
            logic_valid=CertificateLogic.INVALID,
            certificate=cert,
        )

    now = now or datetime.now(UTC)
    not_before = decoded.not_valid_before_utc
    not_after = decoded.not_valid_after_utc
    return CertificateParseResult(
        begin_tag_present=begin_present,
        end_tag_present=end_present,
        semantics_valid=True,
        logic_valid=CertificateLogic.VALID,
        certificate=cert,
        details=CertificateDetails(
            common_name=_name_attribute(decoded.subject, NameOID.COMMON_NAME),
            issuer_organization=_name_attribute(decoded.issuer, NameOID.ORGANIZATION_NAME),
            issuer_common_name=_name_attribute(decoded.issuer, NameOID.COMMON_NAME),
        ),
        valid_from=not_before.strftime("%Y-%m-%d"),
        valid_to=not_after.strftime("%Y-%m-%d"),
        days_remaining=_signed_days(now, not_after),
    )


def _wrap_pem(header: str, payload: str, footer: str) -> str:
    lines = [
        payload[index : index + _PEM_LINE_WIDTH]
        for index in range(0, len(payload), _PEM_LINE_WIDTH)
    ]
    return "\n".join([header, *lines, footer]) + "\n"


def _name_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> str | None:
    attributes = name.get_attributes_for_oid(oid)
    if not attributes:
        return None
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", "replace")


def _signed_days(now: datetime, not_after: datetime) -> int:
    """Whole days from *now* until *not_after*, truncated toward zero."""
    seconds = (not_after - _as_utc(now)).total_seconds()
    days = int(abs(seconds) // _SECONDS_PER_DAY)
    return days if seconds >= 0 else -days


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateDetails",
    "CertificateLogic",
    "CertificateParseResult",
    "parse_certificate",
    "strip_line_breaks",
]
