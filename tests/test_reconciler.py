"""Tests for the configuration round trip."""
from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from samlconf.config import FormConfig, load_config
from samlconf.feed import VersionFeed
from samlconf.fields import NO_CERTIFICATE_DETAILS
from samlconf.findings import ERRORS_TOKEN, FindingCode, Severity
from samlconf.reconciler import Commit, ConfigReconciler, Redisplay
from samlconf.store import ConfigStore, ConfigStoreError


def _reconciler(tmp_path: Path, **kwargs: object) -> ConfigReconciler:
    store = ConfigStore(tmp_path / "configs.yml")
    return ConfigReconciler(store=store, **kwargs)  # type: ignore[arg-type]


def _stored(record: dict[str, str]) -> dict[str, object]:
    """Return *record* as loaded from the store, with the validity marker."""
    return {**record, "valid": True}


def test_prepare_valid_record_has_no_findings(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A complete stored record renders without findings."""
    form = _reconciler(tmp_path).prepare(_stored(valid_record))

    assert form.findings == ()
    assert form.disabled is False
    assert form.may_commit is True
    assert form.tokens["[[ID]]"] == "1"
    assert form.tokens["[[TITLE]]"] == "PHP SAML Configuration"
    assert form.tokens["[[SUBMIT]]"] == "Update"
    assert form.tokens[ERRORS_TOKEN] == ""
    assert "and has +" in form.tokens["[[SP_CERT_VALID]]"]


def test_prepare_schema_mismatch_is_fatal(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A record with 19 items instead of 20 disables the whole form."""
    record = _stored(valid_record)
    del record["debug"]

    form = _reconciler(tmp_path).prepare(record)

    assert form.disabled is True
    fatal = [finding for finding in form.findings if finding.severity is Severity.FATAL]
    assert [finding.code for finding in fatal] == [FindingCode.SCHEMA_MISMATCH]
    assert fatal[0].is_global is True
    assert "Expected 20 configuration items but found 19" in form.tokens[ERRORS_TOKEN]


def test_prepare_unknown_field_is_global_warning(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Columns without a handler raise a global warning."""
    record = _stored(valid_record)
    del record["debug"]
    record["legacy_column"] = "x"

    form = _reconciler(tmp_path).prepare(record)

    assert form.disabled is False
    assert [finding.code for finding in form.findings] == [FindingCode.UNKNOWN_FIELD]
    assert form.findings[0].message == (
        "No handler found for configuration item: legacy_column"
    )
    assert form.may_commit is False


def test_prepare_honours_configured_item_count(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """The expected item count is configurable."""
    form = _reconciler(tmp_path, expected_items=21).prepare(_stored(valid_record))

    assert form.disabled is True


def test_apply_invalid_flag_redisplays_with_field_warning(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Submitting enforced=2 keeps the form editable with one inline warning."""
    submitted = {**valid_record, "enforced": "2"}

    decision = _reconciler(tmp_path).apply(submitted, _stored(valid_record))

    assert isinstance(decision, Redisplay)
    assert decision.form.may_commit is False
    assert decision.form.disabled is False
    assert len(decision.findings) == 1
    finding = decision.findings[0]
    assert finding.field == "enforced"
    assert finding.severity is Severity.WARNING
    assert decision.form.tokens["[[ENFORCED_ERROR]]"] == "Enforced can only be 1 or 0"


def test_apply_certificate_without_end_marker_redisplays(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A truncated certificate is flagged inline and shows no details."""
    broken = valid_record["saml_idp_certificate"].replace("-----END CERTIFICATE-----", "")
    submitted = {**valid_record, "saml_idp_certificate": broken}

    decision = _reconciler(tmp_path).apply(submitted, _stored(valid_record))

    assert isinstance(decision, Redisplay)
    assert [finding.field for finding in decision.findings] == ["saml_idp_certificate"]
    assert "END tag" in decision.form.tokens["[[IP_CERT_ERROR]]"]
    assert decision.form.tokens["[[IP_CERT_VALID]]"] == NO_CERTIFICATE_DETAILS


def test_apply_valid_submission_commits_submitted_record(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A fully valid submission commits exactly the submitted values."""
    decision = _reconciler(tmp_path).apply(dict(valid_record), _stored(valid_record))

    assert isinstance(decision, Commit)
    assert decision.record == valid_record
    assert "valid" not in decision.record


def test_apply_ignores_keys_outside_known_schema(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Unknown submitted keys are dropped silently."""
    submitted = {"debug": "1", "is_admin": "1", "valid": "0"}

    decision = _reconciler(tmp_path).apply(submitted, _stored(valid_record))

    assert isinstance(decision, Commit)
    assert decision.findings == ()
    assert decision.record["debug"] == "1"
    assert "is_admin" not in decision.record
    assert decision.record["strict"] == valid_record["strict"]


def test_apply_normalises_integer_flags(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Accepted values are stored in their normalised form."""
    decision = _reconciler(tmp_path).apply({"jit": 0}, _stored(valid_record))

    assert isinstance(decision, Commit)
    assert decision.record["jit"] == "0"


def test_apply_feed_failure_does_not_block(
    tmp_path: Path,
    valid_record: dict[str, str],
    failing_feed_client: httpx.Client,
) -> None:
    """A release feed outage is informational only."""
    feed = VersionFeed("https://feed.example.test/releases.atom", client=failing_feed_client)

    decision = _reconciler(tmp_path, version_feed=feed).apply(
        dict(valid_record), _stored(valid_record)
    )

    assert isinstance(decision, Commit)
    assert [finding.code for finding in decision.findings] == [FindingCode.FEED_UNREACHABLE]


def test_show_renders_stored_record(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """The stored record gains its validity marker and renders cleanly."""
    reconciler = _reconciler(tmp_path, form=FormConfig(title="SSO", root_doc="/glpi"))
    reconciler.store.save(valid_record)

    form = reconciler.show()

    assert form.findings == ()
    assert form.tokens["[[TITLE]]"] == "SSO"
    assert form.tokens["[[ROOT_DOC]]"] == "/glpi"


def test_show_missing_record_is_fatal(tmp_path: Path) -> None:
    """An absent record disables the form."""
    form = _reconciler(tmp_path).show(5)

    assert form.disabled is True
    assert [finding.code for finding in form.findings] == [FindingCode.RECORD_NOT_FOUND]
    assert "id 5" in form.tokens[ERRORS_TOKEN]


def test_show_store_failure_is_fatal(tmp_path: Path) -> None:
    """An unreadable store renders a disabled form instead of crashing."""
    path = tmp_path / "configs.yml"
    path.write_text("configs: [broken\n", encoding="utf-8")

    form = ConfigReconciler(store=ConfigStore(path)).show()

    assert form.disabled is True
    assert [finding.code for finding in form.findings] == [FindingCode.STORE_UNAVAILABLE]
    assert "Could not retrieve configuration columns" in form.findings[0].message


def test_process_persists_valid_submission(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Accepted submissions are written back to the store."""
    reconciler = _reconciler(tmp_path)
    reconciler.store.save(valid_record)

    decision = reconciler.process({"id": "1", "debug": "1"})

    assert isinstance(decision, Commit)
    stored = reconciler.store.load(1)
    assert stored is not None
    assert stored["debug"] == "1"
    assert "valid" not in stored


def test_process_rejected_submission_leaves_store_untouched(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """Blocked submissions are not persisted."""
    reconciler = _reconciler(tmp_path)
    reconciler.store.save(valid_record)

    decision = reconciler.process({"id": "1", "strict": "maybe"})

    assert isinstance(decision, Redisplay)
    assert reconciler.store.load(1) == valid_record


def test_process_save_failure_is_fatal(
    tmp_path: Path,
    valid_record: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed save redisplays a disabled form."""
    reconciler = _reconciler(tmp_path)
    reconciler.store.save(valid_record)

    def fail_save(self: ConfigStore, record: object) -> None:
        raise ConfigStoreError("disk full")

    monkeypatch.setattr(ConfigStore, "save", fail_save)

    decision = reconciler.process({"id": "1", "debug": "1"})

    assert isinstance(decision, Redisplay)
    assert decision.form.disabled is True
    assert [finding.code for finding in decision.findings] == [FindingCode.PERSIST_FAILED]
    assert decision.form.tokens["[[DEBUG_SELECT]]"]


@pytest.mark.parametrize(
    ("submitted", "expected"),
    [
        ({"id": "3"}, 3),
        ({"id": 4}, 4),
        ({"id": "123456789"}, 123456789),
        ({"id": "1234567890"}, 1),
        ({"id": "abc"}, 1),
        ({"id": "-2"}, 1),
        ({"id": True}, 1),
        ({}, 1),
    ],
)
def test_resolve_id(tmp_path: Path, submitted: dict[str, object], expected: int) -> None:
    """Only short numeric ids are honoured; anything else uses the default."""
    assert _reconciler(tmp_path).resolve_id(submitted) == expected


def test_process_with_unusable_id_targets_default_record(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A garbage id falls back to the default record and is normalised."""
    reconciler = _reconciler(tmp_path)
    reconciler.store.save(valid_record)

    decision = reconciler.process({"id": "../../etc", "jit": "0"})

    assert isinstance(decision, Commit)
    assert decision.record["id"] == "1"


def test_from_config_wires_store_and_feed(tmp_path: Path) -> None:
    """The reconciler mirrors the resolved configuration."""
    config = load_config(
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "store": {"config_id": 2, "expected_items": 20},
            "feed": {"enabled": False},
        },
        config_file=tmp_path / "missing.yml",
    )

    reconciler = ConfigReconciler.from_config(config)

    assert reconciler.store.path == tmp_path / "state" / "configs.yml"
    assert reconciler.config_id == 2
    assert reconciler.version_feed is None


def test_process_refuses_to_overwrite_record_with_wrong_item_count(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A stored record missing a column is redisplayed disabled and never saved."""
    reconciler = _reconciler(tmp_path)
    corrupted = dict(valid_record)
    del corrupted["jit"]
    reconciler.store.save(corrupted)

    decision = reconciler.process({"id": "1", "debug": "1", "jit": "1"})

    assert isinstance(decision, Redisplay)
    assert decision.form.disabled is True
    assert [finding.code for finding in decision.findings] == [FindingCode.SCHEMA_MISMATCH]
    assert decision.form.tokens["[[DEBUG_SELECT]]"]
    assert reconciler.store.load(1) == corrupted


def test_apply_against_record_with_wrong_item_count_redisplays(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """The item count of the known record gates ``apply`` as well."""
    known = _stored(valid_record)
    del known["strict"]

    decision = _reconciler(tmp_path).apply({"debug": "1"}, known)

    assert isinstance(decision, Redisplay)
    assert decision.form.disabled is True
    assert FindingCode.SCHEMA_MISMATCH in [finding.code for finding in decision.findings]


def test_apply_undecodable_certificate_commits_with_note(
    tmp_path: Path,
    valid_record: dict[str, str],
) -> None:
    """A certificate that cannot be decoded is noted inline but still saved."""
    bogus = "-----BEGIN CERTIFICATE-----Zm9v-----END CERTIFICATE-----"

    decision = _reconciler(tmp_path).apply(
        {"saml_sp_certificate": bogus}, _stored(valid_record)
    )

    assert isinstance(decision, Commit)
    assert decision.record["saml_sp_certificate"] == bogus
    assert [finding.code for finding in decision.findings] == [
        FindingCode.CERTIFICATE_UNPARSEABLE
    ]
    assert all(finding.severity is Severity.INFO for finding in decision.findings)
