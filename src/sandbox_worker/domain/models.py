"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path, PurePosixPath
from typing import Final, NoReturn, TypeVar, cast

from sandbox_worker.constants import (
    DEFAULT_CPU_CORES,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_MEMORY_MB,
    DEFAULT_TIMEOUT_MS,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_COMMAND_TEXT = 1_000_000
_MAX_FILES = 1024
_MAX_JSON_DEPTH = 16

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(GB|MB|KB)?\s*$", re.IGNORECASE)


class SessionState(StrEnum):
    INIT = "init"
    PREPARING = "preparing"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    ERROR = "error"


SESSION_TRANSITIONS: Final[Mapping[SessionState, frozenset[SessionState]]] = {
    SessionState.INIT: frozenset(
        {SessionState.PREPARING, SessionState.ERROR, SessionState.DESTROYING}
    ),
    SessionState.PREPARING: frozenset(
        {SessionState.EXECUTING, SessionState.ERROR, SessionState.DESTROYING}
    ),
    SessionState.EXECUTING: frozenset(
        {SessionState.COLLECTING, SessionState.ERROR, SessionState.DESTROYING}
    ),
    SessionState.COLLECTING: frozenset({SessionState.DESTROYING, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.DESTROYING}),
    SessionState.DESTROYING: frozenset({SessionState.DESTROYED, SessionState.ERROR}),
    SessionState.DESTROYED: frozenset(),
}


def is_legal_transition(current: SessionState, target: SessionState) -> bool:
    return target in SESSION_TRANSITIONS[current]


class KillReason(StrEnum):
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT_EXCEEDED = "output_limit_exceeded"
    CANCELLED = "cancelled"


class ErrorCode(StrEnum):
    VALIDATION_REJECTED = "validation_rejected"
    PROVISIONING_FAILED = "provisioning_failed"
    EXECUTION_ERROR = "execution_error"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT_EXCEEDED = "output_limit_exceeded"
    CANCELLED = "cancelled"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# Statuses a JobOutput may carry; the rest only describe a job still in the worker.
OUTPUT_STATUSES: Final[frozenset[JobStatus]] = frozenset(
    {JobStatus.FINISHED, JobStatus.FAILED, JobStatus.TIMEOUT}
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def parse_memory_mb(value: object, *, default: int = DEFAULT_MEMORY_MB) -> int:
    """Convert a job memory limit such as ``"2GB"`` or ``"512mb"`` into whole MB.

    ``GB`` multiplies by 1024, ``MB`` or a bare number is taken as MB, ``KB`` is
    divided by 1024. Fractions round up. Anything unparseable, and zero, yields
    ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if not isinstance(value, str):
        return default
    match = _MEMORY_RE.match(value)
    if match is None:
        return default
    amount = float(match.group(1))
    unit = (match.group(2) or "MB").upper()
    if unit == "GB":
        megabytes = math.ceil(amount * 1024)
    elif unit == "KB":
        megabytes = math.ceil(amount / 1024)
    else:
        megabytes = math.ceil(amount)
    return megabytes if megabytes > 0 else default


@dataclass(frozen=True, slots=True)
class ResourceLimits(CanonicalModel):
    """Ceilings enforced on one execution. ``cpu_cores`` is informational."""

    cpu_cores: float = DEFAULT_CPU_CORES
    memory_mb: int = DEFAULT_MEMORY_MB
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    def __post_init__(self) -> None:
        cpu = _as_float(self.cpu_cores, "ResourceLimits.cpu_cores")
        if cpu <= 0:
            _fail("ResourceLimits.cpu_cores", "must be > 0")
        _as_int(self.memory_mb, "ResourceLimits.memory_mb", minimum=1)
        _as_int(self.timeout_ms, "ResourceLimits.timeout_ms", minimum=1)
        _as_int(self.max_output_bytes, "ResourceLimits.max_output_bytes", minimum=1)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(slots=True)
class GovernorState:
    """Mutable sampling state; the owning governor is its only writer."""

    is_active: bool = False
    start_time: float | None = None
    memory_samples: list[float] = field(default_factory=list)
    cpu_samples: list[float] = field(default_factory=list)
    output_bytes_seen: int = 0
    killed: bool = False
    kill_reason: str | None = None
    kill_kind: KillReason | None = None

    def copy(self) -> GovernorState:
        return replace(
            self,
            memory_samples=list(self.memory_samples),
            cpu_samples=list(self.cpu_samples),
        )


@dataclass(frozen=True, slots=True)
class ValidationResult(CanonicalModel):
    allowed: bool
    reason: str | None = None
    sanitized: str | None = None

    @classmethod
    def accept(cls, sanitized: str) -> ValidationResult:
        return cls(allowed=True, sanitized=sanitized)

    @classmethod
    def reject(cls, reason: str) -> ValidationResult:
        return cls(allowed=False, reason=reason)


@dataclass(slots=True)
class Session(CanonicalModel):
    """One job's disposable directory pair plus its lifecycle state."""

    session_id: str
    job_id: str
    session_dir: Path
    work_dir: Path
    output_dir: Path
    state: SessionState = SessionState.INIT
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def is_destroyed(self) -> bool:
        return self.state is SessionState.DESTROYED


@dataclass(frozen=True, slots=True)
class JobLimits(CanonicalModel):
    """Limits as the orchestrator sends them; ``memory`` is a size string."""

    cpu: float | None = None
    memory: str | None = None
    timeout: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> JobLimits:
        parsed = _expect_object(
            data, "JobLimits", required=set(), optional={"cpu", "memory", "timeout"}
        )
        cpu_raw = parsed.get("cpu")
        memory_raw = parsed.get("memory")
        timeout_raw = parsed.get("timeout")
        memory: str | None
        if memory_raw is None:
            memory = None
        elif isinstance(memory_raw, int) and not isinstance(memory_raw, bool):
            memory = str(memory_raw)
        else:
            memory = _as_str(memory_raw, "JobLimits.memory", max_len=64)
        return cls(
            cpu=None if cpu_raw is None else _as_float(cpu_raw, "JobLimits.cpu", minimum=0.0),
            memory=memory,
            timeout=None
            if timeout_raw is None
            else _as_int(timeout_raw, "JobLimits.timeout", minimum=1),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {}
        if self.cpu is not None:
            out["cpu"] = self.cpu
        if self.memory is not None:
            out["memory"] = self.memory
        if self.timeout is not None:
            out["timeout"] = self.timeout
        return out


@dataclass(frozen=True, slots=True)
class JobInput(CanonicalModel):
    """A job as dispatched by the orchestrator.

    ``command`` may be empty here; the validator owns that rejection. ``config``
    is opaque to the worker and carried through untouched.
    """

    job_id: str
    command: str
    files: Mapping[str, str] = field(default_factory=dict)
    limits: JobLimits = field(default_factory=JobLimits)
    config: Mapping[str, JSONValue] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> JobInput:
        parsed = _expect_object(
            data,
            "JobInput",
            required={"job_id", "command"},
            optional={"files", "limits", "config"},
        )
        limits_raw = parsed.get("limits")
        config_raw = parsed.get("config")
        return cls(
            job_id=_as_str(parsed["job_id"], "JobInput.job_id", max_len=256),
            command=_as_str(
                parsed["command"],
                "JobInput.command",
                min_len=0,
                max_len=_MAX_COMMAND_TEXT,
                strip=False,
            ),
            files=_as_files(parsed.get("files"), "JobInput.files"),
            limits=JobLimits()
            if limits_raw is None
            else JobLimits.from_dict(_as_mapping(limits_raw, "JobInput.limits")),
            config={}
            if config_raw is None
            else _as_json_object(config_raw, "JobInput.config"),
        )


@dataclass(frozen=True, slots=True)
class JobMetrics(CanonicalModel):
    duration_ms: int
    worker_id: str
    memory_peak_mb: float | None = None
    cpu_usage_percent: float | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "duration_ms": self.duration_ms,
            "worker_id": self.worker_id,
        }
        if self.memory_peak_mb is not None:
            out["memory_peak_mb"] = round(self.memory_peak_mb, 3)
        if self.cpu_usage_percent is not None:
            out["cpu_usage_percent"] = round(self.cpu_usage_percent, 3)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> JobMetrics:
        parsed = _expect_object(
            data,
            "JobMetrics",
            required={"duration_ms", "worker_id"},
            optional={"memory_peak_mb", "cpu_usage_percent"},
        )
        peak = parsed.get("memory_peak_mb")
        cpu = parsed.get("cpu_usage_percent")
        return cls(
            duration_ms=_as_int(parsed["duration_ms"], "JobMetrics.duration_ms", minimum=0),
            worker_id=_as_str(parsed["worker_id"], "JobMetrics.worker_id", max_len=256),
            memory_peak_mb=None
            if peak is None
            else _as_float(peak, "JobMetrics.memory_peak_mb", minimum=0.0),
            cpu_usage_percent=None
            if cpu is None
            else _as_float(cpu, "JobMetrics.cpu_usage_percent", minimum=0.0),
        )


@dataclass(frozen=True, slots=True)
class JobOutput(CanonicalModel):
    job_id: str
    status: JobStatus
    exit_code: int
    stdout: str
    stderr: str
    artifacts: tuple[str, ...]
    metrics: JobMetrics
    error_code: ErrorCode | None = None

    def __post_init__(self) -> None:
        if self.status not in OUTPUT_STATUSES:
            allowed = ", ".join(sorted(item.value for item in OUTPUT_STATUSES))
            _fail("JobOutput.status", f"invalid value {self.status!r}; expected one of: {allowed}")

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.FINISHED

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "artifacts": list(self.artifacts),
            "metrics": self.metrics.to_dict(),
        }
        if self.error_code is not None:
            out["error_code"] = self.error_code.value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> JobOutput:
        parsed = _expect_object(
            data,
            "JobOutput",
            required={"job_id", "status", "exit_code", "stdout", "stderr", "artifacts", "metrics"},
            optional={"error_code"},
        )
        error_code = parsed.get("error_code")
        return cls(
            job_id=_as_str(parsed["job_id"], "JobOutput.job_id", max_len=256),
            status=_as_enum(JobStatus, parsed["status"], "JobOutput.status"),
            exit_code=_as_int(parsed["exit_code"], "JobOutput.exit_code"),
            stdout=_as_output_text(parsed["stdout"], "JobOutput.stdout"),
            stderr=_as_output_text(parsed["stderr"], "JobOutput.stderr"),
            artifacts=tuple(
                _as_str(item, "JobOutput.artifacts[]", max_len=4096)
                for item in _as_sequence(parsed["artifacts"], "JobOutput.artifacts")
            ),
            metrics=JobMetrics.from_dict(_as_mapping(parsed["metrics"], "JobOutput.metrics")),
            error_code=None
            if error_code is None
            else _as_enum(ErrorCode, error_code, "JobOutput.error_code"),
        )


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return cast("Mapping[str, object]", value)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_output_text(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_files(value: object, path: str) -> dict[str, str]:
    """Filenames are kept verbatim; containment is checked by the session manager."""
    if value is None:
        return {}
    mapping = _as_mapping(value, path)
    if len(mapping) > _MAX_FILES:
        _fail(path, f"must contain <= {_MAX_FILES} entries")
    out: dict[str, str] = {}
    for name, content in mapping.items():
        if not isinstance(name, str):
            _fail(path, "file names must be strings")
        if not isinstance(content, str):
            _fail(f"{path}.{name}", f"expected string content, got {type(content).__name__}")
        out[name] = content
    return out


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, str, int)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[]", depth=depth + 1) for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    _fail(path, f"unsupported JSON value type {type(value).__name__}")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, (Path, PurePosixPath)):
        return value.as_posix()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "CanonicalModel",
    "ErrorCode",
    "GovernorState",
    "JSONScalar",
    "JSONValue",
    "JobInput",
    "JobLimits",
    "JobMetrics",
    "JobOutput",
    "JobStatus",
    "KillReason",
    "OUTPUT_STATUSES",
    "ResourceLimits",
    "SESSION_TRANSITIONS",
    "Session",
    "SessionState",
    "ValidationResult",
    "is_legal_transition",
    "parse_memory_mb",
]
