"""Structured logging setup on ``structlog`` with secret redaction.

Every module logs through ``structlog.get_logger(__name__)`` with a snake_case
event name and keyword fields. ``configure_logging`` installs the processor
chain once per process: context variables (job/session correlation), level,
UTC timestamp, redaction, then a JSON or console renderer writing to stderr so
stdout stays free for command output.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Final, TextIO

import structlog
from structlog.contextvars import bound_contextvars
from structlog.typing import Processor

if TYPE_CHECKING:
    from sandbox_worker.config.schema import LoggingSettings

REDACTED_VALUE: Final[str] = "***REDACTED***"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

# Keys the logging pipeline itself produces; never treated as sensitive.
_STRUCTURAL_KEYS: Final[frozenset[str]] = frozenset({"event", "level", "timestamp", "logger"})

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")
_GITHUB_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")
_AWS_ACCESS_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")

_LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "console"})


def configure_logging(
    settings: LoggingSettings | None = None,
    *,
    level: str | None = None,
    fmt: str | None = None,
    redact_secrets: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """Install the process-wide structlog configuration.

    Explicit keyword arguments override ``settings``; both fall back to INFO,
    JSON output and redaction enabled.
    """

    resolved_level = level or (settings.level if settings is not None else "INFO")
    resolved_format = fmt or (settings.format if settings is not None else "json")
    resolved_redact = (
        redact_secrets
        if redact_secrets is not None
        else (settings.redact_secrets if settings is not None else True)
    )
    if resolved_format not in _LOG_FORMATS:
        allowed = ", ".join(sorted(_LOG_FORMATS))
        raise ValueError(f"unsupported log format {resolved_format!r}; expected one of: {allowed}")

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if resolved_redact:
        processors.append(redact_event_dict)
    if resolved_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_parse_log_level(resolved_level)),
        logger_factory=structlog.PrintLoggerFactory(
            file=stream if stream is not None else sys.stderr
        ),
        cache_logger_on_first_use=False,
    )


def reset_logging() -> None:
    """Restore structlog defaults and drop bound context (tests, CLI teardown)."""
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@contextmanager
def job_context(
    *,
    job_id: str | None = None,
    session_id: str | None = None,
    worker_id: str | None = None,
) -> Iterator[None]:
    """Bind correlation fields for every log line emitted in scope."""
    fields = {
        key: value
        for key, value in (("job_id", job_id), ("session_id", session_id), ("worker_id", worker_id))
        if value is not None
    }
    with bound_contextvars(**fields):
        yield


def redact_event_dict(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask sensitive keys and secret-looking substrings."""
    for key in list(event_dict):
        if key in _STRUCTURAL_KEYS:
            value = event_dict[key]
            if key == "event" and isinstance(value, str):
                event_dict[key] = redact_text(value)
            continue
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def redact_text(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {REDACTED_VALUE}", redacted)
    redacted = _PROVIDER_KEY_PATTERN.sub(REDACTED_VALUE, redacted)
    redacted = _GITHUB_TOKEN_PATTERN.sub(REDACTED_VALUE, redacted)
    return _AWS_ACCESS_KEY_PATTERN.sub(REDACTED_VALUE, redacted)


def is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and is_sensitive_key(key_context):
        return REDACTED_VALUE
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {
            key: _redact_value(item, key_context=key if isinstance(key, str) else None)
            for key, item in value.items()
        }
    return value


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise ValueError(f"log level must be str or int, got {type(value).__name__}")
    normalized = value.strip().upper()
    if normalized == "WARN":
        normalized = "WARNING"
    level = logging.getLevelNamesMapping().get(normalized)
    if level is None:
        raise ValueError(f"unsupported log level: {value!r}")
    return level


__all__ = [
    "REDACTED_VALUE",
    "configure_logging",
    "is_sensitive_key",
    "job_context",
    "redact_event_dict",
    "redact_text",
    "reset_logging",
]
