"""
sandbox-worker — runtime config loader.

File: src/sandbox_worker/config/loader.py

Purpose
- Build the effective worker config from a stack of layers and validate it once.

Behavior
- Layers, lowest first: built-in defaults, the TOML file, ``SANDBOX_WORKER_<SECTION>_<KEY>``
  environment variables, then ``--set section.key=value`` CLI overrides.
- A missing default file (``./sandbox-worker.toml``) is skipped; a missing explicit file is an
  error.
- String values from env and CLI are parsed into the type of the field's default.
- Path fields are expanded (``~``, ``$VAR``) and resolved against the config file's directory.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import reduce
from pathlib import Path
from typing import Any, Final

from sandbox_worker.config.schema import (
    PATH_FIELDS,
    WorkerConfig,
    assert_valid_config,
    default_config_dict,
    merge_config,
)
from sandbox_worker.constants import CONFIG_FILENAME, ENV_PREFIX

DEFAULT_CONFIG_FILE: Final[str] = CONFIG_FILENAME

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})

FieldKey = tuple[str, str]


class ConfigLoadError(ValueError):
    """A config source could not be read or one of its values could not be parsed."""


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """One source of settings and the section mapping it contributes."""

    source: str
    values: dict[str, Any] = field(default_factory=dict)


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerConfig:
    """Merge every layer, resolve paths and validate the result."""

    layers = collect_layers(config_path, cli_overrides=cli_overrides, environ=environ)
    merged = reduce(merge_config, (layer.values for layer in layers), {})
    return assert_valid_config(normalize_paths(merged, base_dir=_config_file(config_path).parent))


def load_config_file(path: str | Path) -> WorkerConfig:
    return load_config(path)


def collect_layers(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[ConfigLayer, ...]:
    """Return the config layers in precedence order, lowest first."""

    defaults = default_config_dict()
    field_types = _field_types(defaults)
    path = _config_file(config_path)
    return (
        ConfigLayer("defaults", defaults),
        ConfigLayer(f"file:{path}", _read_toml(path, required=config_path is not None)),
        ConfigLayer("env", _env_layer(field_types, os.environ if environ is None else environ)),
        ConfigLayer("cli", _cli_layer(field_types, cli_overrides or {})),
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field made absolute relative to ``base_dir``."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        values = normalized.get(section)
        if isinstance(values, dict) and isinstance(values.get(key), str) and values[key].strip():
            values[key] = _absolute_posix(values[key], base_dir)
    return normalized


def dump_effective_config(config: WorkerConfig) -> str:
    return config.to_json()


def env_name_for_path(path: tuple[str, ...]) -> str:
    """``("worker", "concurrency")`` -> ``SANDBOX_WORKER_WORKER_CONCURRENCY``."""
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return Path.cwd().resolve() / DEFAULT_CONFIG_FILE
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _field_types(defaults: Mapping[str, Any]) -> dict[FieldKey, type]:
    """Scalar field types by (section, key), taken from the defaults."""
    return {
        (section, key): type(value)
        for section, values in defaults.items()
        if isinstance(values, Mapping)
        for key, value in values.items()
        if isinstance(value, (bool, int, float, str))
    }


def _env_layer(field_types: Mapping[FieldKey, type], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for (section, key), kind in sorted(field_types.items()):
        name = env_name_for_path((section, key))
        if name in environ:
            parsed = _parse(environ[name], kind, source=name, dotted=f"{section}.{key}")
            layer.setdefault(section, {})[key] = parsed
    return layer


def _cli_layer(
    field_types: Mapping[FieldKey, type], overrides: Mapping[str, object]
) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        section, sep, key = dotted.partition(".")
        if not sep or not section or not key or "." in key:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}; expected <section>.<key>")
        value = overrides[dotted]
        kind = field_types.get((section, key))
        # Unknown keys pass through untouched so schema validation can name them.
        if isinstance(value, str) and kind is not None:
            value = _parse(value, kind, source=f"--set {dotted}", dotted=dotted)
        layer.setdefault(section, {})[key] = value
    return layer


def _parse(raw: str, kind: type, *, source: str, dotted: str) -> object:
    text = raw.strip()
    parser, expected = _PARSERS[kind]
    try:
        return parser(text)
    except ValueError as exc:
        raise ConfigLoadError(f"{source} -> {dotted} must be {expected}") from exc


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(text)


_PARSERS: Final[dict[type, tuple[Callable[[str], object], str]]] = {
    str: (str, "a string"),
    int: (int, "an integer"),
    float: (float, "a number"),
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
}


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "collect_layers",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "load_config_file",
    "normalize_paths",
]
