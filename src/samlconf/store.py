"""YAML-backed persistence for SAML configuration records.

Records live in a single file (``configs.yml`` under the state directory by
default) shaped as ``{"configs": [{...}, ...]}``. Every write goes through a
temporary file and ``os.replace`` so a failed save never leaves a partial
document behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_STORE_FILE = "configs.yml"


class ConfigStoreError(RuntimeError):
    """Raised when the configuration store cannot be read or written."""


@dataclass(frozen=True)
class ConfigStore:
    """Read and upsert configuration records keyed by ``id``."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the store path after initialisation."""
        object.__setattr__(self, "path", self.path.expanduser())

    def exists(self) -> bool:
        return self.path.exists()

    def read_all(self) -> list[dict[str, Any]]:
        """Return every stored record (empty list when the file is missing)."""
        if not self.path.exists():
            return []
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to read configuration store {self.path}: {exc}"
            ) from exc
        except yaml.YAMLError as exc:
            raise ConfigStoreError(
                f"Failed to parse configuration store {self.path}: {exc}"
            ) from exc
        if data is None:
            return []
        if not isinstance(data, Mapping) or not isinstance(data.get("configs", []), list):
            raise ConfigStoreError(
                f"Configuration store {self.path} must contain a 'configs' list."
            )
        records: list[dict[str, Any]] = []
        for entry in data.get("configs", []):
            if not isinstance(entry, Mapping):
                raise ConfigStoreError(
                    f"Configuration store {self.path} contains a non-mapping entry."
                )
            records.append(dict(entry))
        return records

    def load(self, config_id: int) -> dict[str, Any] | None:
        """Return a copy of the record whose ``id`` equals *config_id*."""
        for record in self.read_all():
            if _record_id(record) == config_id:
                return deepcopy(record)
        return None

    def save(self, record: Mapping[str, object]) -> None:
        """Insert or replace *record*, matching on its ``id``."""
        record_id = _record_id(record)
        if record_id is None:
            raise ConfigStoreError("Configuration records must carry an integer 'id'.")

        records = self.read_all()
        stored = dict(record)
        for index, existing in enumerate(records):
            if _record_id(existing) == record_id:
                records[index] = stored
                break
        else:
            records.append(stored)
        self._write({"configs": records})

    def _write(self, payload: Mapping[str, object]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to write configuration store {self.path}: {exc}"
            ) from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise ConfigStoreError(
                f"Failed to write configuration store {self.path}: {exc}"
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _record_id(record: Mapping[str, object]) -> int | None:
    value = record.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


__all__ = ["DEFAULT_STORE_FILE", "ConfigStore", "ConfigStoreError"]
