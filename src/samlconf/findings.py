"""Validation findings and the per-request ledger that aggregates them."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from markupsafe import Markup, escape

ERRORS_TOKEN = "[[ERRORS]]"


class Severity(str, Enum):
    """How strongly a finding gates persistence."""

    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"

    @property
    def blocks_commit(self) -> bool:
        """Return ``True`` when the severity prevents persisting the record."""
        return self is not Severity.INFO


class FindingCode(str, Enum):
    """Closed taxonomy of validation outcomes."""

    SCHEMA_MISMATCH = "schema-mismatch"
    STORE_UNAVAILABLE = "store-unavailable"
    RECORD_NOT_FOUND = "record-not-found"
    UNKNOWN_FIELD = "unknown-field"
    INVALID_BOOLEAN_FLAG = "invalid-boolean-flag"
    CERTIFICATE_MARKER_MISSING = "certificate-marker-missing"
    CERTIFICATE_UNPARSEABLE = "certificate-unparseable"
    KEY_MARKER_MISSING = "key-marker-missing"
    PERSIST_FAILED = "persist-failed"
    FEED_UNREACHABLE = "feed-unreachable"
    FEED_UNPARSEABLE = "feed-unparseable"


@dataclass(frozen=True)
class Finding:
    """One validation outcome.

    ``field`` names the configuration column the finding belongs to; ``None``
    marks a form-global finding. ``token`` is the placeholder prefix used to
    render field-scoped messages inline (``<token>_ERROR``).
    """

    code: FindingCode
    message: str
    severity: Severity
    field: str | None = None
    token: str | None = None

    @property
    def is_global(self) -> bool:
        """Return ``True`` when the finding is not tied to a field."""
        return self.field is None

    @property
    def error_token(self) -> str | None:
        """Return the inline placeholder for field-scoped findings."""
        if self.field is None:
            return None
        prefix = self.token or self.field.upper()
        return f"[[{prefix}_ERROR]]"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "field": self.field,
        }


def field_finding(
    code: FindingCode,
    message: str,
    *,
    field: str,
    token: str | None = None,
    severity: Severity = Severity.WARNING,
) -> Finding:
    """Create a field-scoped finding (warning unless stated otherwise)."""
    return Finding(code=code, message=message, severity=severity, field=field, token=token)


def global_finding(
    code: FindingCode,
    message: str,
    *,
    severity: Severity = Severity.WARNING,
) -> Finding:
    """Create a form-global finding."""
    return Finding(code=code, message=message, severity=severity)


class ValidationLedger:
    """Append-only accumulator for the findings of one request.

    ``has_warning`` and ``has_fatal`` only ever move from ``False`` to
    ``True``; INFO findings are kept for display but never gate a commit.
    """

    def __init__(self, findings: Iterable[Finding] = ()) -> None:
        """Start a ledger, optionally seeded with *findings*."""
        self._findings: list[Finding] = []
        self._has_warning = False
        self._has_fatal = False
        self.extend(findings)

    def record(self, finding: Finding) -> None:
        """Append *finding* and update the sticky flags."""
        self._findings.append(finding)
        if finding.severity is Severity.WARNING:
            self._has_warning = True
        elif finding.severity is Severity.FATAL:
            self._has_fatal = True

    def extend(self, findings: Iterable[Finding]) -> None:
        """Append every finding in *findings*."""
        for finding in findings:
            self.record(finding)

    @property
    def findings(self) -> tuple[Finding, ...]:
        """Return the recorded findings in insertion order."""
        return tuple(self._findings)

    @property
    def has_warning(self) -> bool:
        return self._has_warning

    @property
    def has_fatal(self) -> bool:
        return self._has_fatal

    @property
    def may_commit(self) -> bool:
        """Return ``True`` when nothing recorded so far blocks persistence."""
        return not self._has_warning and not self._has_fatal

    @property
    def disable_controls(self) -> bool:
        """Return ``True`` when the rendered form must be read-only."""
        return self._has_fatal

    def for_field(self, field: str) -> tuple[Finding, ...]:
        """Return the findings scoped to *field*."""
        return tuple(finding for finding in self._findings if finding.field == field)

    def global_findings(self) -> tuple[Finding, ...]:
        """Return the findings not tied to any field."""
        return tuple(finding for finding in self._findings if finding.is_global)

    def render_tokens(self) -> Mapping[str, str]:
        """Return inline error tokens plus the global ``[[ERRORS]]`` banner."""
        tokens: dict[str, Markup] = {}
        for finding in self._findings:
            token = finding.error_token
            if token is None:
                continue
            message = escape(finding.message)
            if token in tokens:
                tokens[token] = tokens[token] + Markup("<br>") + message
            else:
                tokens[token] = message

        banner = self.global_findings()
        if banner:
            lines = Markup("").join(escape(finding.message) + Markup("<br>") for finding in banner)
            tokens[ERRORS_TOKEN] = (
                Markup(' <div class="alert mb-o rounded-0 border-top-0 border-bottom-0 '
                       'border-right-0 full-width" role="alert">')
                + lines
                + Markup("</div>")
            )
        else:
            tokens[ERRORS_TOKEN] = Markup("")
        return tokens


__all__ = [
    "ERRORS_TOKEN",
    "Finding",
    "FindingCode",
    "Severity",
    "ValidationLedger",
    "field_finding",
    "global_finding",
]
