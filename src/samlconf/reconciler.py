"""Drive one configuration round trip through the field validators.

``prepare`` turns a stored record into a render map for the form. ``apply``
validates submitted values against a known record and decides whether the
result may be persisted. ``show`` and ``process`` wrap both around the
configuration store.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from . import __version__
from .config import AppConfig, FormConfig
from .feed import VersionFeed
from .fields import FIELD_VALIDATORS, VALID_MARKER, FieldValidator, ValidationContext
from .findings import (
    Finding,
    FindingCode,
    Severity,
    ValidationLedger,
    global_finding,
)
from .store import ConfigStore, ConfigStoreError

_MAX_ID_LENGTH = 10


@dataclass(frozen=True)
class FormRender:
    """Render map handed to the presentation layer."""

    tokens: Mapping[str, str]
    disabled: bool
    findings: tuple[Finding, ...] = ()

    @property
    def may_commit(self) -> bool:
        return not any(finding.severity.blocks_commit for finding in self.findings)


@dataclass(frozen=True)
class Commit:
    """Decision to persist ``record``."""

    record: dict[str, Any]
    findings: tuple[Finding, ...] = ()


@dataclass(frozen=True)
class Redisplay:
    """Decision to show the form again with its findings."""

    form: FormRender

    @property
    def findings(self) -> tuple[Finding, ...]:
        return self.form.findings


Decision = Commit | Redisplay


@dataclass
class ConfigReconciler:
    """Validate configuration records and hand accepted ones to the store."""

    store: ConfigStore
    config_id: int = 1
    expected_items: int = 20
    form: FormConfig = field(default_factory=FormConfig)
    version_feed: VersionFeed | None = None
    validators: Mapping[str, FieldValidator] = field(default_factory=lambda: FIELD_VALIDATORS)
    now: datetime | None = None
    running_version: str = __version__

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        client: httpx.Client | None = None,
    ) -> ConfigReconciler:
        """Build a reconciler from the resolved application configuration."""
        feed = None
        if config.feed.enabled:
            feed = VersionFeed(config.feed.url, timeout=config.feed.timeout, client=client)
        return cls(
            store=ConfigStore(config.store.path),
            config_id=config.store.config_id,
            expected_items=config.store.expected_items,
            form=config.form,
            version_feed=feed,
        )

    # ------------------------------------------------------------------
    # Pure passes
    # ------------------------------------------------------------------
    def prepare(
        self,
        record: Mapping[str, object],
        *,
        ledger: ValidationLedger | None = None,
    ) -> FormRender:
        """Validate every field of a stored *record* and build its render map."""
        ledger = ledger if ledger is not None else ValidationLedger()
        self._check_schema(record, ledger)
        return self._render_record(record, ledger)

    def apply(
        self,
        submitted: Mapping[str, object],
        known: Mapping[str, object],
        *,
        ledger: ValidationLedger | None = None,
    ) -> Decision:
        """Validate *submitted* values against the schema of *known*."""
        ledger = ledger if ledger is not None else ValidationLedger()
        accepted, tokens = self._apply(submitted, known, ledger)
        if ledger.may_commit:
            return Commit(record=accepted, findings=ledger.findings)
        return Redisplay(form=self._render(tokens, ledger))

    # ------------------------------------------------------------------
    # Store-backed round trips
    # ------------------------------------------------------------------
    def load_record(
        self,
        config_id: int,
        ledger: ValidationLedger,
    ) -> dict[str, Any] | None:
        """Load a record and append the ``valid`` marker; report failures."""
        try:
            record = self.store.load(config_id)
        except ConfigStoreError as exc:
            ledger.record(
                global_finding(
                    FindingCode.STORE_UNAVAILABLE,
                    f"Could not retrieve configuration columns from the store: {exc}",
                    severity=Severity.FATAL,
                )
            )
            return None
        if record is None:
            ledger.record(
                global_finding(
                    FindingCode.RECORD_NOT_FOUND,
                    f"Configuration with id {config_id} was not found",
                    severity=Severity.FATAL,
                )
            )
            return None
        record.setdefault(VALID_MARKER, True)
        return record

    def show(self, config_id: int | None = None) -> FormRender:
        """Render the form for the stored record *config_id*."""
        ledger = ValidationLedger()
        record = self.load_record(self.config_id if config_id is None else config_id, ledger)
        if record is None:
            return self._render(self._general_tokens(), ledger)
        return self.prepare(record, ledger=ledger)

    def process(self, submitted: Mapping[str, object]) -> Decision:
        """Validate a submitted form and persist it when nothing blocks."""
        config_id = self.resolve_id(submitted)
        if "id" in submitted:
            submitted = {**submitted, "id": str(config_id)}

        ledger = ValidationLedger()
        known = self.load_record(config_id, ledger)
        if known is None:
            return Redisplay(form=self._render(self._general_tokens(), ledger))
        if not self._check_schema(known, ledger):
            return Redisplay(form=self._render_record(known, ledger))

        accepted, tokens = self._apply(submitted, known, ledger)
        if not ledger.may_commit:
            return Redisplay(form=self._render(tokens, ledger))

        try:
            self.store.save(accepted)
        except ConfigStoreError as exc:
            ledger.record(
                global_finding(
                    FindingCode.PERSIST_FAILED,
                    f"Unable to save the configuration: {exc}",
                    severity=Severity.FATAL,
                )
            )
            return Redisplay(form=self._render(tokens, ledger))
        return Commit(record=accepted, findings=ledger.findings)

    def resolve_id(self, submitted: Mapping[str, object]) -> int:
        """Return the submitted id when it is a short number, else the default."""
        raw = submitted.get("id")
        text = "" if raw is None or isinstance(raw, bool) else str(raw)
        if text.isascii() and text.isdigit() and len(text) < _MAX_ID_LENGTH:
            return int(text)
        return self.config_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _apply(
        self,
        submitted: Mapping[str, object],
        known: Mapping[str, object],
        ledger: ValidationLedger,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        self._check_schema(known, ledger)
        context = self._context()
        tokens = self._general_tokens()
        accepted: dict[str, Any] = {
            name: value for name, value in known.items() if name != VALID_MARKER
        }
        for name, raw in submitted.items():
            if name == VALID_MARKER or name not in known:
                continue
            validator = self.validators.get(name)
            if validator is None:
                ledger.record(_unknown_field(name))
                continue
            outcome = validator.validate(raw, context)
            ledger.extend(outcome.findings)
            tokens.update(outcome.tokens)
            accepted[name] = outcome.value
        return accepted, tokens

    def _render_record(
        self,
        record: Mapping[str, object],
        ledger: ValidationLedger,
    ) -> FormRender:
        context = self._context()
        tokens = self._general_tokens()
        for name, raw in record.items():
            if name == VALID_MARKER:
                continue
            validator = self.validators.get(name)
            if validator is None:
                ledger.record(_unknown_field(name))
                continue
            outcome = validator.validate(raw, context)
            ledger.extend(outcome.findings)
            tokens.update(outcome.tokens)
        return self._render(tokens, ledger)

    def _check_schema(self, record: Mapping[str, object], ledger: ValidationLedger) -> bool:
        """Record a fatal finding when *record* does not have the expected item count."""
        if len(record) == self.expected_items:
            return True
        ledger.record(
            global_finding(
                FindingCode.SCHEMA_MISMATCH,
                f"Expected {self.expected_items} configuration items but found "
                f"{len(record)}; the stored configuration looks corrupted",
                severity=Severity.FATAL,
            )
        )
        return False

    def _context(self) -> ValidationContext:
        return ValidationContext(
            version_feed=self.version_feed,
            now=self.now,
            running_version=self.running_version,
        )

    def _general_tokens(self) -> dict[str, str]:
        return {
            "[[ROOT_DOC]]": self.form.root_doc,
            "[[TITLE]]": self.form.title,
            "[[HEADER_GENERAL]]": "General",
            "[[HEADER_PROVIDER]]": "Service Provider Configuration",
            "[[HEADER_PROVIDER_CONFIG]]": "Identity Provider Configuration",
            "[[HEADER_SECURITY]]": "Security",
            "[[AVAILABLE]]": "Available",
            "[[SELECTED]]": "Selected",
            "[[SUBMIT]]": "Update",
        }

    @staticmethod
    def _render(tokens: dict[str, str], ledger: ValidationLedger) -> FormRender:
        tokens.update(ledger.render_tokens())
        return FormRender(
            tokens=tokens,
            disabled=ledger.disable_controls,
            findings=ledger.findings,
        )


def _unknown_field(name: str) -> Finding:
    return global_finding(
        FindingCode.UNKNOWN_FIELD,
        f"No handler found for configuration item: {name}",
    )


__all__ = [
    "Commit",
    "ConfigReconciler",
    "Decision",
    "FormRender",
    "Redisplay",
]
