"""Per-field validators for the SAML configuration record.

Each column of the stored record maps to exactly one :class:`FieldValidator`
in :data:`FIELD_VALIDATORS`. A validator receives the raw value and returns a
:class:`FieldOutcome`: the normalised value, any findings, and the
placeholder tokens the form template needs for that field. Validators never
touch shared state; the caller merges their outcomes.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from markupsafe import Markup

from . import __version__
from .certificates import CertificateLogic, parse_certificate
from .feed import FeedError, FeedUnreachable, VersionFeed
from .findings import Finding, FindingCode, Severity, field_finding, global_finding

VALID_MARKER = "valid"
NO_CERTIFICATE_DETAILS = "No certificate details provided or available"

_OPTION = Markup("<option value='{0}'{1}>{2}</option>")
_YES_NO: tuple[tuple[str, str], ...] = (("1", "Yes"), ("0", "No"))


class FieldKind(str, Enum):
    """Closed set of validation behaviours."""

    FLAG = "flag"
    CHOICE = "choice"
    MULTI_CHOICE = "multi-choice"
    TEXT = "text"
    CERTIFICATE = "certificate"
    PRIVATE_KEY = "private-key"
    IDENTITY = "identity"
    VERSION = "version"


class NameIdFormat(str, Enum):
    """Name ID formats offered to the identity provider."""

    UNSPECIFIED = "unspecified"
    EMAIL_ADDRESS = "emailAddress"
    TRANSIENT = "transient"
    PERSISTENT = "persistent"


class AuthnContextComparison(str, Enum):
    """Comparison methods for the requested authentication context."""

    EXACT = "exact"
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    BETTER = "better"


class AuthnContext(str, Enum):
    """Authentication contexts selectable in the multi-select."""

    PASSWORD_PROTECTED_TRANSPORT = "PasswordProtectedTransport"
    PASSWORD = "Password"
    X509 = "X509"


@dataclass(frozen=True)
class FieldSpec:
    """Static description of one configuration column."""

    name: str
    kind: FieldKind
    token: str
    label: str = ""
    title: str = ""
    options: tuple[tuple[str, str], ...] = ()
    subject: str = ""


@dataclass(frozen=True)
class FieldOutcome:
    """Result of validating one raw value."""

    value: str
    findings: tuple[Finding, ...] = ()
    tokens: Mapping[str, str] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        """Return ``True`` when no finding blocks persisting the value."""
        return not any(finding.severity.blocks_commit for finding in self.findings)


@dataclass(frozen=True)
class ValidationContext:
    """Collaborators shared by the validators of one request."""

    version_feed: VersionFeed | None = None
    now: datetime | None = None
    running_version: str = __version__


FieldRunner = Callable[[FieldSpec, object, ValidationContext], FieldOutcome]


@dataclass(frozen=True)
class FieldValidator:
    """A field specification bound to its validation routine."""

    spec: FieldSpec
    run: FieldRunner

    @property
    def name(self) -> str:
        return self.spec.name

    def validate(self, raw: object, context: ValidationContext | None = None) -> FieldOutcome:
        """Validate *raw* for this field."""
        return self.run(self.spec, raw, context or ValidationContext())


def parse_flag(raw: object) -> bool | None:
    """Parse a boolean flag stored as ``0``/``1``; ``None`` when invalid."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return {0: False, 1: True}.get(raw)
    if isinstance(raw, str):
        return {"0": False, "1": True}.get(raw)
    return None


def render_options(
    options: tuple[tuple[str, str], ...],
    selected: set[str] | frozenset[str],
) -> Markup:
    """Render ``<option>`` elements, marking values found in *selected*."""
    return Markup("").join(
        _OPTION.format(value, " selected" if value in selected else "", label)
        for value, label in options
    )


def _as_text(raw: object) -> str:
    if raw is None:
        return ""
    return str(raw)


def _labels(spec: FieldSpec) -> dict[str, str]:
    return {
        f"[[{spec.token}_LABEL]]": spec.label,
        f"[[{spec.token}_TITLE]]": spec.title,
    }


def _validate_flag(spec: FieldSpec, raw: object, context: ValidationContext) -> FieldOutcome:
    parsed = parse_flag(raw)
    findings: tuple[Finding, ...] = ()
    if parsed is None:
        value = _as_text(raw)
        findings = (
            field_finding(
                FindingCode.INVALID_BOOLEAN_FLAG,
                f"{spec.subject} can only be 1 or 0",
                field=spec.name,
                token=spec.token,
            ),
        )
    else:
        value = "1" if parsed else "0"
    tokens = _labels(spec)
    tokens[f"[[{spec.token}_SELECT]]"] = render_options(spec.options, {value})
    return FieldOutcome(value=value, findings=findings, tokens=tokens)


def _validate_choice(spec: FieldSpec, raw: object, context: ValidationContext) -> FieldOutcome:
    # Unknown choices pass through unselected and without a finding.
    value = _as_text(raw)
    tokens = _labels(spec)
    tokens[f"[[{spec.token}_SELECT]]"] = render_options(spec.options, {value})
    return FieldOutcome(value=value, tokens=tokens)


def _validate_multi_choice(
    spec: FieldSpec, raw: object, context: ValidationContext
) -> FieldOutcome:
    value = _as_text(raw) or "none"
    selected = {part.strip() for part in value.split(",") if part.strip()}
    tokens = _labels(spec)
    tokens[f"[[{spec.token}_SELECT]]"] = render_options(spec.options, selected)
    tokens[f"[[{spec.token}_CONTEXT]]"] = value
    return FieldOutcome(value=value, tokens=tokens)


def _validate_text(spec: FieldSpec, raw: object, context: ValidationContext) -> FieldOutcome:
    value = _as_text(raw)
    tokens = _labels(spec)
    tokens[f"[[{spec.token}_VALUE]]"] = value
    return FieldOutcome(value=value, tokens=tokens)


def _validate_certificate(
    spec: FieldSpec, raw: object, context: ValidationContext
) -> FieldOutcome:
    value = _as_text(raw)
    result = parse_certificate(value, now=context.now)

    missing: list[str] = []
    if not result.begin_tag_present:
        missing.append("The certificate BEGIN tag should be present")
    if not result.end_tag_present:
        missing.append("The certificate END tag should be present")
    findings: tuple[Finding, ...] = ()
    if missing:
        findings = (
            field_finding(
                FindingCode.CERTIFICATE_MARKER_MISSING,
                "; ".join(missing),
                field=spec.name,
                token=spec.token,
            ),
        )
    elif not result.semantics_valid or result.logic_valid is CertificateLogic.INVALID:
        findings = (
            field_finding(
                FindingCode.CERTIFICATE_UNPARSEABLE,
                "The certificate could not be decoded, no details are available",
                field=spec.name,
                token=spec.token,
                severity=Severity.INFO,
            ),
        )

    if result.details is not None and result.days_remaining is not None:
        summary = (
            f"Configured {spec.subject} certificate was issued by: "
            f"{result.details.issuer_common_name or '-'} for: "
            f"{result.details.common_name or '-'} and has "
            f"{result.days_remaining:+d} days left"
        )
    else:
        summary = NO_CERTIFICATE_DETAILS

    tokens = _labels(spec)
    tokens[f"[[{spec.token}_VALUE]]"] = value
    tokens[f"[[{spec.token}_VALID]]"] = summary
    return FieldOutcome(value=value, findings=findings, tokens=tokens)


def _validate_private_key(
    spec: FieldSpec, raw: object, context: ValidationContext
) -> FieldOutcome:
    value = _as_text(raw).replace("\\r\\n", "")
    findings: tuple[Finding, ...] = ()
    if "-BEGIN PRIVATE KEY-" not in value or "-END PRIVATE KEY-" not in value:
        findings = (
            field_finding(
                FindingCode.KEY_MARKER_MISSING,
                "This does not look like a valid private key, please make sure to "
                "include the private key BEGIN and END tags",
                field=spec.name,
                token=spec.token,
            ),
        )
    tokens = _labels(spec)
    tokens[f"[[{spec.token}_VALUE]]"] = value
    return FieldOutcome(value=value, findings=findings, tokens=tokens)


def _validate_identity(spec: FieldSpec, raw: object, context: ValidationContext) -> FieldOutcome:
    value = _as_text(raw)
    return FieldOutcome(value=value, tokens={f"[[{spec.token}]]": value})


def _validate_version(spec: FieldSpec, raw: object, context: ValidationContext) -> FieldOutcome:
    value = _as_text(raw)
    tokens: dict[str, str] = {f"[[{spec.token}_VALUE]]": value}
    if context.version_feed is None:
        return FieldOutcome(value=value, tokens=tokens)

    compare = value or context.running_version
    try:
        check = context.version_feed.check(compare)
    except FeedError as exc:
        code = (
            FindingCode.FEED_UNREACHABLE
            if isinstance(exc, FeedUnreachable)
            else FindingCode.FEED_UNPARSEABLE
        )
        finding = global_finding(code, str(exc), severity=Severity.INFO)
        return FieldOutcome(value=value, findings=(finding,), tokens=tokens)

    if check.latest:
        tokens[f"[[{spec.token}]]"] = Markup(
            "<a href='{0}' target='_blank'>A new version of Phpsaml is available</a>. "
            "Version {1} was found in the repository, you are running {2}"
        ).format(check.git_url, check.git_version, check.compare)
    else:
        tokens[f"[[{spec.token}]]"] = Markup(
            "You are using version {0} which is also the "
            "<a href='{1}' target='_blank'>latest version</a>"
        ).format(check.git_version, check.git_url)
    return FieldOutcome(value=value, tokens=tokens)


_RUNNERS: Mapping[FieldKind, FieldRunner] = {
    FieldKind.FLAG: _validate_flag,
    FieldKind.CHOICE: _validate_choice,
    FieldKind.MULTI_CHOICE: _validate_multi_choice,
    FieldKind.TEXT: _validate_text,
    FieldKind.CERTIFICATE: _validate_certificate,
    FieldKind.PRIVATE_KEY: _validate_private_key,
    FieldKind.IDENTITY: _validate_identity,
    FieldKind.VERSION: _validate_version,
}


def _flag(name: str, token: str, subject: str, label: str, title: str) -> FieldSpec:
    return FieldSpec(
        name=name,
        kind=FieldKind.FLAG,
        token=token,
        label=label,
        title=title,
        options=_YES_NO,
        subject=subject,
    )


FIELD_SPECS: tuple[FieldSpec, ...] = (
    _flag(
        "enforced",
        "ENFORCED",
        "Enforced",
        "Plugin Enforced",
        "Toggle 'yes' to enforce Single Sign On for all login sessions",
    ),
    _flag(
        "strict",
        "STRICT",
        "Strict",
        "Strict",
        "If 'strict' is True, then PhpSaml will reject unencrypted messages",
    ),
    _flag("debug", "DEBUG", "Debug", "Debug", "Toggle yes to print errors"),
    _flag(
        "jit",
        "JIT",
        "Jit",
        "Just In Time (JIT) Provisioning",
        "Toggle 'yes' to create new users if they do not already exist. Toggle 'no' "
        "will cause an error if the user does not already exist.",
    ),
    FieldSpec(
        name="saml_sp_certificate",
        kind=FieldKind.CERTIFICATE,
        token="SP_CERT",
        label="Service Provider Certificate",
        title="Certificate we should use when communicating with the Identity Provider. "
        "Use one long string without returns!",
        subject="SP",
    ),
    FieldSpec(
        name="saml_sp_certificate_key",
        kind=FieldKind.PRIVATE_KEY,
        token="SP_KEY",
        label="Service Provider Certificate Key",
        title="Certificate private key we should use when communicating with the "
        "Identity Provider",
    ),
    FieldSpec(
        name="saml_sp_nameid_format",
        kind=FieldKind.CHOICE,
        token="SP_ID",
        label="Name ID Format",
        title="The name id format that is sent to the iDP.",
        options=(
            (NameIdFormat.UNSPECIFIED.value, "Unspecified"),
            (NameIdFormat.EMAIL_ADDRESS.value, "Email Address"),
            (NameIdFormat.TRANSIENT.value, "Transient"),
            (NameIdFormat.PERSISTENT.value, "Persistent"),
        ),
    ),
    FieldSpec(
        name="saml_idp_entity_id",
        kind=FieldKind.TEXT,
        token="IP_ID",
        label="Identity Provider Entity ID",
        title="Identifier of the IdP entity (must be a URI).",
    ),
    FieldSpec(
        name="saml_idp_single_sign_on_service",
        kind=FieldKind.TEXT,
        token="IP_SSO_URL",
        label="Identity Provider Single Sign On Service URL",
        title="URL Target of the Identity Provider where we will send the "
        "Authentication Request Message.",
    ),
    FieldSpec(
        name="saml_idp_single_logout_service",
        kind=FieldKind.TEXT,
        token="IP_SLS_URL",
        label="Identity Provider Single Logout Service URL",
        title="URL Location of the Identity Provider where we will send the "
        "Single Logout Request.",
    ),
    FieldSpec(
        name="saml_idp_certificate",
        kind=FieldKind.CERTIFICATE,
        token="IP_CERT",
        label="Identity Provider Public X509 Certificate",
        title="Public x509 certificate of the Identity Provider.",
        subject="IdP",
    ),
    FieldSpec(
        name="requested_authn_context",
        kind=FieldKind.MULTI_CHOICE,
        token="AUTHN",
        label="Requested Authn Context",
        title="Set to None and no AuthContext will be sent in the AuthnRequest.",
        options=tuple((context.value, context.value) for context in AuthnContext),
    ),
    FieldSpec(
        name="requested_authn_context_comparison",
        kind=FieldKind.CHOICE,
        token="AUTHN_COMPARE",
        label="Requested Authn Comparison",
        title="How should the library compare the requested Authn Context? "
        "The value defaults to 'Exact'.",
        options=tuple(
            (comparison.value, comparison.value.capitalize())
            for comparison in AuthnContextComparison
        ),
    ),
    _flag(
        "saml_security_nameidencrypted",
        "ENCR_NAMEID",
        "Encrypt NameID",
        "Encrypt NameID",
        "Toggle yes to encrypt NameID. Requires service provider certificate and key",
    ),
    _flag(
        "saml_security_authnrequestssigned",
        "SIGN_AUTHN_REQ",
        "Sign Authn Requests",
        "Sign Authn Requests",
        "Toggle yes to sign Authn Requests. Requires service provider certificate and key",
    ),
    _flag(
        "saml_security_logoutrequestsigned",
        "SIGN_LOGOUT_REQ",
        "Sign Logout Requests",
        "Sign Logout Requests",
        "Toggle yes to sign Logout Requests. Requires service provider certificate and key",
    ),
    _flag(
        "saml_security_logoutresponsesigned",
        "SIGN_LOGOUT_RES",
        "Sign Logout Responses",
        "Sign Logout Responses",
        "Toggle yes to sign Logout Responses. Requires service provider certificate and key",
    ),
    FieldSpec(name="id", kind=FieldKind.IDENTITY, token="ID"),
    FieldSpec(name="version", kind=FieldKind.VERSION, token="VERSION"),
)


def _build_registry(specs: tuple[FieldSpec, ...]) -> dict[str, FieldValidator]:
    registry: dict[str, FieldValidator] = {}
    for spec in specs:
        if spec.name in registry or spec.name == VALID_MARKER:
            raise ValueError(f"Duplicate or reserved field name: {spec.name}")
        registry[spec.name] = FieldValidator(spec=spec, run=_RUNNERS[spec.kind])
    return registry


FIELD_VALIDATORS: Mapping[str, FieldValidator] = _build_registry(FIELD_SPECS)
SCHEMA_FIELDS: tuple[str, ...] = tuple(FIELD_VALIDATORS)


def get_validator(name: str) -> FieldValidator | None:
    """Return the validator registered for *name*, if any."""
    return FIELD_VALIDATORS.get(name)


__all__ = [
    "FIELD_SPECS",
    "FIELD_VALIDATORS",
    "NO_CERTIFICATE_DETAILS",
    "SCHEMA_FIELDS",
    "VALID_MARKER",
    "AuthnContext",
    "AuthnContextComparison",
    "FieldKind",
    "FieldOutcome",
    "FieldSpec",
    "FieldValidator",
    "NameIdFormat",
    "ValidationContext",
    "get_validator",
    "parse_flag",
    "render_options",
]
