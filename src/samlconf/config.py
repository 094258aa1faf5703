"""Configuration loader for samlconf.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/samlconf/config.yml`` (or an override path).
3. Environment variables prefixed with ``SAMLCONF_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SAMLCONF_STORE__CONFIG_ID=2
    export SAMLCONF_FEED__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "SAMLCONF_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_FEED_URL = "https://github.com/derricksmith/phpsaml/releases.atom"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class StoreConfig:
    """Location and shape of the persisted configuration record."""

    path: Path
    config_id: int = 1
    expected_items: int = 20

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "config_id": self.config_id,
            "expected_items": self.expected_items,
        }


@dataclass(frozen=True)
class FeedConfig:
    """Remote release feed used for update notifications."""

    enabled: bool = True
    url: str = DEFAULT_FEED_URL
    timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "url": self.url, "timeout": self.timeout}


@dataclass(frozen=True)
class FormConfig:
    """Static values injected into the rendered configuration form."""

    title: str = "PHP SAML Configuration"
    root_doc: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"title": self.title, "root_doc": self.root_doc}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for samlconf."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path
    store: StoreConfig
    feed: FeedConfig
    form: FormConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "store": self.store.to_dict(),
            "feed": self.feed.to_dict(),
            "form": self.form.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/samlconf/config.yml",
    "state_dir": "/var/lib/samlconf",
    "logs_dir": "/var/log/samlconf",
    "templates_dir": "/etc/samlconf/templates",
    "store": {
        "path": None,  # derived from state_dir when absent
        "config_id": 1,
        "expected_items": 20,
    },
    "feed": {
        "enabled": True,
        "url": DEFAULT_FEED_URL,
        "timeout": 5.0,
    },
    "form": {
        "title": "PHP SAML Configuration",
        "root_doc": "",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "store": {"path", "config_id", "expected_items"},
    "feed": {"enabled", "url", "timeout"},
    "form": {"title", "root_doc"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    _merge_layer(merged, _load_yaml_file(config_path), f"file:{config_path}")
    _merge_layer(merged, _build_env_overrides(resolved_env), "env")
    if overrides:
        _merge_layer(merged, overrides, "overrides")

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(data, f"file:{path}")


def _merge_layer(target: dict[str, object], layer: Mapping[str, object], source: str) -> None:
    """Overlay *layer* onto *target*; sections merge per key, scalars replace."""
    for key, value in layer.items():
        current = target.get(key)
        if key in ALLOWED_SECTION_KEYS and isinstance(current, dict) and isinstance(value, Mapping):
            current.update(_mapping(value, f"{source}:{key}"))
        else:
            target[key] = value


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        unknown = set(_mapping(raw.get(section), section)) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    url = _mapping(raw.get("feed"), "feed").get("url")
    if url is not None and not str(url).startswith(("http://", "https://")):
        raise ConfigError(f"feed.url must be an http(s) URL. Got {url!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _path(raw.get("state_dir"), "state_dir")

    store_mapping = _mapping(raw.get("store"), "store")
    store_path_value = store_mapping.get("path")
    store = StoreConfig(
        path=(
            _path(store_path_value, "store.path")
            if store_path_value
            else state_dir / "configs.yml"
        ),
        config_id=_positive_int(store_mapping.get("config_id"), "store.config_id", default=1),
        expected_items=_positive_int(
            store_mapping.get("expected_items"), "store.expected_items", default=20
        ),
    )

    feed_mapping = _mapping(raw.get("feed"), "feed")
    feed = FeedConfig(
        enabled=_flag(feed_mapping.get("enabled"), "feed.enabled", default=True),
        url=str(feed_mapping.get("url", DEFAULT_FEED_URL)),
        timeout=_positive_float(feed_mapping.get("timeout"), "feed.timeout", default=5.0),
    )

    form_mapping = _mapping(raw.get("form"), "form")
    form = FormConfig(
        title=str(form_mapping.get("title", "PHP SAML Configuration")),
        root_doc=str(form_mapping.get("root_doc") or ""),
    )

    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        state_dir=state_dir,
        logs_dir=_path(raw.get("logs_dir"), "logs_dir"),
        templates_dir=_path(raw.get("templates_dir"), "templates_dir"),
        store=store,
        feed=feed,
        form=form,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Translate ``SAMLCONF_KEY`` and ``SAMLCONF_SECTION__KEY`` variables."""
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        segments = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
        if not segments:
            continue
        if len(segments) > 2:
            raise ConfigError(f"Environment variable {key} nests deeper than SECTION__KEY.")
        try:
            parsed = yaml.safe_load(value.strip())
        except yaml.YAMLError:  # pragma: no cover - keep the raw string
            parsed = value.strip()
        if len(segments) == 1:
            overrides[segments[0]] = parsed
            continue
        section, option = segments
        bucket = overrides.setdefault(section, {})
        if not isinstance(bucket, dict):
            raise ConfigError(f"Environment variable {key} conflicts with a scalar {section}.")
        bucket[option] = parsed
    return overrides


def _mapping(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"Mapping {label} must use string keys.")
    return dict(value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _positive_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    if value <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return value


def _positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        numeric = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


_TRUE_WORDS = frozenset({"true", "yes", "1", "on"})
_FALSE_WORDS = frozenset({"false", "no", "0", "off"})


def _flag(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower() if isinstance(value, str) else None
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


__all__ = [
    "AppConfig",
    "ConfigError",
    "FeedConfig",
    "FormConfig",
    "StoreConfig",
    "load_config",
]
