"""
sandbox-worker — typed configuration schema.

File: src/sandbox_worker/config/schema.py

Purpose
- Define the worker's configuration sections as frozen dataclasses.
- Validate raw mappings (TOML, env, CLI layers) and report every issue at once.

Schema sections
- ``worker``: identity and job concurrency.
- ``session``: session root and directory layout.
- ``governance``: default and maximum resource limits, sampling interval.
- ``security``: command validation switch and length ceiling.
- ``logging``: level, renderer and secret redaction.

Unknown sections and keys are rejected; there is no free-form passthrough.
"""

from __future__ import annotations

import json
import math
import socket
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Final

from sandbox_worker.constants import (
    DEFAULT_CPU_CORES,
    DEFAULT_MAX_COMMAND_LENGTH,
    DEFAULT_MAX_CONCURRENT_SESSIONS,
    DEFAULT_MAX_CPU_CORES,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_MAX_TIMEOUT_MS,
    DEFAULT_MEMORY_MB,
    DEFAULT_OUTPUT_DIR_NAME,
    DEFAULT_SAMPLE_INTERVAL_MS,
    DEFAULT_SESSION_ROOT,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WORK_DIR_NAME,
    DEFAULT_WORKER_CONCURRENCY,
)
from sandbox_worker.domain.models import ResourceLimits

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

# Fields holding filesystem paths; the loader resolves them against the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("session", "root"),)


def default_worker_id() -> str:
    return f"worker-{socket.gethostname() or 'local'}"


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    id: str = field(default_factory=default_worker_id)
    concurrency: int = DEFAULT_WORKER_CONCURRENCY


@dataclass(frozen=True, slots=True)
class SessionSettings:
    root: str = DEFAULT_SESSION_ROOT
    work_dir_name: str = DEFAULT_WORK_DIR_NAME
    output_dir_name: str = DEFAULT_OUTPUT_DIR_NAME
    max_concurrent_sessions: int = DEFAULT_MAX_CONCURRENT_SESSIONS
    strict_transitions: bool = True


@dataclass(frozen=True, slots=True)
class GovernanceSettings:
    default_cpu: float = float(DEFAULT_CPU_CORES)
    default_memory_mb: int = DEFAULT_MEMORY_MB
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    sample_interval_ms: int = DEFAULT_SAMPLE_INTERVAL_MS
    max_cpu: float = float(DEFAULT_MAX_CPU_CORES)
    max_memory_mb: int = DEFAULT_MAX_MEMORY_MB
    max_timeout_ms: int = DEFAULT_MAX_TIMEOUT_MS

    def default_limits(self) -> ResourceLimits:
        """Limits applied to a job that specifies none."""
        return ResourceLimits(
            cpu_cores=self.default_cpu,
            memory_mb=self.default_memory_mb,
            timeout_ms=self.default_timeout_ms,
            max_output_bytes=self.max_output_bytes,
        )

    def clamp(self, limits: ResourceLimits) -> ResourceLimits:
        """Cap job-supplied limits at the configured maxima."""
        return ResourceLimits(
            cpu_cores=min(limits.cpu_cores, self.max_cpu),
            memory_mb=min(limits.memory_mb, self.max_memory_mb),
            timeout_ms=min(limits.timeout_ms, self.max_timeout_ms),
            max_output_bytes=min(limits.max_output_bytes, self.max_output_bytes),
        )


@dataclass(frozen=True, slots=True)
class SecuritySettings:
    require_command_validation: bool = True
    max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "json"
    redact_secrets: bool = True


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    """Effective, validated worker configuration."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    governance: GovernanceSettings = field(default_factory=GovernanceSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self, *, indent: int | None = None) -> str:
        if indent is None:
            return json.dumps(
                self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
            )
        return json.dumps(self.to_dict(), sort_keys=True, indent=indent, ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with the typed config when no issues were found."""

    config: WorkerConfig | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> WorkerConfig:
    return WorkerConfig()


def default_config_dict() -> dict[str, Any]:
    """Built-in defaults as a plain mapping, the base layer of the loader."""
    return default_config().to_dict()


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Overlay ``overlay`` onto ``base`` section by section.

    Sections are replaced key by key; a non-mapping section value in ``overlay``
    replaces the whole section so validation can report it.
    """
    merged: dict[str, Any] = {}
    for key, value in base.items():
        merged[key] = dict(value) if isinstance(value, Mapping) else value
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            current.update(value)
        elif isinstance(value, Mapping):
            merged[key] = dict(value)
        else:
            merged[key] = value
    return merged


def validate_config(payload: Mapping[str, object]) -> ConfigValidationResult:
    """Validate a complete config mapping without raising."""

    issues = _IssueCollector()
    root = _as_object(payload, "$", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTION_VALIDATORS), "$", issues)
    sections: dict[str, Any] = {}
    for name, validator in _SECTION_VALIDATORS.items():
        raw = root.get(name, {})
        section = _as_object(raw, name, issues)
        if section is None:
            continue
        sections[name] = validator(section, name, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    config = WorkerConfig(**sections)
    _check_cross_field(config, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=config, issues=())


def assert_valid_config(payload: Mapping[str, object]) -> WorkerConfig:
    """Validate and return the typed config, or raise :class:`ConfigValidationError`."""

    result = validate_config(payload)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_worker(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> WorkerSettings:
    defaults = WorkerSettings()
    _reject_unknown_keys(payload, {"id", "concurrency"}, path, issues)
    return WorkerSettings(
        id=_field(payload, "id", defaults.id, path, issues, _as_str),
        concurrency=_field(
            payload, "concurrency", defaults.concurrency, path, issues, _as_positive_int
        ),
    )


def _validate_session(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> SessionSettings:
    defaults = SessionSettings()
    _reject_unknown_keys(
        payload,
        {
            "root",
            "work_dir_name",
            "output_dir_name",
            "max_concurrent_sessions",
            "strict_transitions",
        },
        path,
        issues,
    )
    return SessionSettings(
        root=_field(payload, "root", defaults.root, path, issues, _as_path_text),
        work_dir_name=_field(
            payload, "work_dir_name", defaults.work_dir_name, path, issues, _as_dir_name
        ),
        output_dir_name=_field(
            payload, "output_dir_name", defaults.output_dir_name, path, issues, _as_dir_name
        ),
        max_concurrent_sessions=_field(
            payload,
            "max_concurrent_sessions",
            defaults.max_concurrent_sessions,
            path,
            issues,
            _as_positive_int,
        ),
        strict_transitions=_field(
            payload, "strict_transitions", defaults.strict_transitions, path, issues, _as_bool
        ),
    )


def _validate_governance(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> GovernanceSettings:
    defaults = GovernanceSettings()
    int_fields = (
        "default_memory_mb",
        "default_timeout_ms",
        "max_output_bytes",
        "sample_interval_ms",
        "max_memory_mb",
        "max_timeout_ms",
    )
    float_fields = ("default_cpu", "max_cpu")
    _reject_unknown_keys(payload, {*int_fields, *float_fields}, path, issues)

    values: dict[str, Any] = {}
    for name in int_fields:
        values[name] = _field(
            payload, name, getattr(defaults, name), path, issues, _as_positive_int
        )
    for name in float_fields:
        values[name] = _field(
            payload, name, getattr(defaults, name), path, issues, _as_positive_float
        )
    return GovernanceSettings(**values)


def _validate_security(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> SecuritySettings:
    defaults = SecuritySettings()
    _reject_unknown_keys(
        payload, {"require_command_validation", "max_command_length"}, path, issues
    )
    return SecuritySettings(
        require_command_validation=_field(
            payload,
            "require_command_validation",
            defaults.require_command_validation,
            path,
            issues,
            _as_bool,
        ),
        max_command_length=_field(
            payload,
            "max_command_length",
            defaults.max_command_length,
            path,
            issues,
            _as_positive_int,
        ),
    )


def _validate_logging(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> LoggingSettings:
    defaults = LoggingSettings()
    _reject_unknown_keys(payload, {"level", "format", "redact_secrets"}, path, issues)

    level = defaults.level
    if "level" in payload:
        parsed = _as_str(payload["level"], _join(path, "level"), issues)
        if parsed is not None:
            normalized = "WARNING" if parsed.upper() == "WARN" else parsed.upper()
            if normalized in LOG_LEVELS:
                level = normalized
            else:
                issues.add(
                    _join(path, "level"),
                    f"invalid value {parsed!r}; expected one of: {', '.join(LOG_LEVELS)}",
                )

    fmt = defaults.format
    if "format" in payload:
        parsed = _as_enum(
            payload["format"], _join(path, "format"), issues, allowed_values=LOG_FORMATS
        )
        if parsed is not None:
            fmt = parsed

    return LoggingSettings(
        level=level,
        format=fmt,
        redact_secrets=_field(
            payload, "redact_secrets", defaults.redact_secrets, path, issues, _as_bool
        ),
    )


_SECTION_VALIDATORS: Final = {
    "worker": _validate_worker,
    "session": _validate_session,
    "governance": _validate_governance,
    "security": _validate_security,
    "logging": _validate_logging,
}


def _check_cross_field(config: WorkerConfig, issues: _IssueCollector) -> None:
    governance = config.governance
    pairs = (
        ("default_cpu", governance.default_cpu, "max_cpu", governance.max_cpu),
        (
            "default_memory_mb",
            governance.default_memory_mb,
            "max_memory_mb",
            governance.max_memory_mb,
        ),
        (
            "default_timeout_ms",
            governance.default_timeout_ms,
            "max_timeout_ms",
            governance.max_timeout_ms,
        ),
    )
    for default_name, default_value, max_name, max_value in pairs:
        if default_value > max_value:
            issues.add(f"governance.{default_name}", f"must be <= governance.{max_name}")

    if config.session.work_dir_name == config.session.output_dir_name:
        issues.add("session.output_dir_name", "must differ from session.work_dir_name")


def _field(
    payload: Mapping[str, object],
    key: str,
    default: Any,
    path: str,
    issues: _IssueCollector,
    parser: Any,
) -> Any:
    if key not in payload:
        return default
    parsed = parser(payload[key], _join(path, key), issues)
    return default if parsed is None else parsed


def _join(path: str, key: str) -> str:
    if path == "$":
        return key
    return f"{path}.{key}"


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_dir_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "/" in parsed or "\\" in parsed or parsed in {".", ".."}:
        issues.add(path, "must be a single directory name")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_positive_int(value: object, path: str, issues: _IssueCollector) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if value < 1:
        issues.add(path, "must be >= 1")
        return None
    return value


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


__all__ = [
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "GovernanceSettings",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "LoggingSettings",
    "PATH_FIELDS",
    "SecuritySettings",
    "SessionSettings",
    "WorkerConfig",
    "WorkerSettings",
    "assert_valid_config",
    "default_config",
    "default_config_dict",
    "default_worker_id",
    "merge_config",
    "validate_config",
]
