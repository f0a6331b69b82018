"""Security utilities: the pre-execution command gate."""

from sandbox_worker.security.command_validator import (
    ALLOWED_COMMANDS,
    DANGEROUS_PATTERNS,
    CommandValidator,
    DangerousPattern,
    sanitize_command,
    validate_command,
)

__all__ = [
    "ALLOWED_COMMANDS",
    "DANGEROUS_PATTERNS",
    "CommandValidator",
    "DangerousPattern",
    "sanitize_command",
    "validate_command",
]
