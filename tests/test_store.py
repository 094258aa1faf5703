"""Tests for the YAML configuration store."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from samlconf.store import ConfigStore, ConfigStoreError


def test_load_returns_none_when_file_missing(tmp_path: Path) -> None:
    """A missing store simply has no records."""
    store = ConfigStore(tmp_path / "configs.yml")

    assert store.exists() is False
    assert store.read_all() == []
    assert store.load(1) is None


def test_save_then_load_preserves_field_order(tmp_path: Path) -> None:
    """Records keep their column order across a save."""
    store = ConfigStore(tmp_path / "state" / "configs.yml")
    record = {"enforced": "0", "strict": "1", "id": 1, "version": "1.2.1"}

    store.save(record)

    loaded = store.load(1)
    assert loaded == record
    assert list(loaded or {}) == ["enforced", "strict", "id", "version"]
    assert oct(store.path.stat().st_mode & 0o777) == "0o640"


def test_save_upserts_by_id(tmp_path: Path) -> None:
    """Saving an existing id replaces it; a new id is appended."""
    store = ConfigStore(tmp_path / "configs.yml")
    store.save({"id": 1, "debug": "0"})
    store.save({"id": 2, "debug": "0"})

    store.save({"id": "1", "debug": "1"})

    records = store.read_all()
    assert [record["debug"] for record in records] == ["1", "0"]
    assert store.load(1) == {"id": "1", "debug": "1"}


def test_save_rejects_records_without_integer_id(tmp_path: Path) -> None:
    """Records must be addressable by a numeric id."""
    store = ConfigStore(tmp_path / "configs.yml")

    with pytest.raises(ConfigStoreError):
        store.save({"id": "abc"})
    with pytest.raises(ConfigStoreError):
        store.save({"debug": "1"})
    assert store.exists() is False


def test_read_rejects_invalid_yaml(tmp_path: Path) -> None:
    """Parse errors are wrapped in ConfigStoreError."""
    path = tmp_path / "configs.yml"
    path.write_text("configs: [unterminated\n", encoding="utf-8")

    with pytest.raises(ConfigStoreError):
        ConfigStore(path).load(1)


@pytest.mark.parametrize(
    "payload",
    [["not", "a", "mapping"], {"configs": "nope"}, {"configs": ["scalar"]}],
)
def test_read_rejects_unexpected_shapes(tmp_path: Path, payload: object) -> None:
    """The document must be a mapping holding a list of records."""
    path = tmp_path / "configs.yml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")

    with pytest.raises(ConfigStoreError):
        ConfigStore(path).read_all()


def test_write_failure_raises_store_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Filesystem errors during save surface as ConfigStoreError."""
    store = ConfigStore(tmp_path / "configs.yml")

    def fail_replace(src: object, dst: object) -> None:
        raise OSError("read-only filesystem")

    monkeypatch.setattr("samlconf.store.os.replace", fail_replace)

    with pytest.raises(ConfigStoreError):
        store.save({"id": 1})
    assert not store.path.exists()
    assert list(tmp_path.iterdir()) == []
