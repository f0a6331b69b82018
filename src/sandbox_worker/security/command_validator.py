"""
Pre-execution command gate.

A command is accepted only when it is non-empty, within the length ceiling,
matches none of the dangerous patterns, and its first token (or the whole
command) is on the allowlist. The denylist always wins over the allowlist.

Regex detection of shell substitution is incomplete by nature: quoting,
``eval`` and interpreter one-liners can all hide intent. This gate narrows the
attack surface for semi-trusted jobs; it is not an OS-level sandbox.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from sandbox_worker.constants import DEFAULT_MAX_COMMAND_LENGTH
from sandbox_worker.domain.errors import ValidationError
from sandbox_worker.domain.models import ValidationResult

# fmt: off
ALLOWED_COMMANDS: Final[frozenset[str]] = frozenset(
    {
        # runtimes and package managers
        "npx", "node", "npm", "bun", "pnpm", "yarn",
        "python", "python3", "pip", "pip3", "uv", "poetry",
        "cargo", "rustc", "go", "make", "cmake",
        # vcs and shells
        "git", "bash", "sh",
        # file utilities
        "cat", "ls", "mkdir", "rm", "cp", "mv", "chmod", "chown", "find",
        "tar", "unzip", "zip", "diff", "patch",
        # text processing
        "grep", "sed", "awk", "jq", "echo", "printf", "head", "tail", "wc",
        "sort", "uniq", "cut", "tr",
        # network fetch
        "curl", "wget",
        # introspection
        "opencode", "type", "which", "whoami", "id", "env", "printenv",
        "date", "sleep", "timeout", "pwd", "hostname", "uname",
    }
)
# fmt: on

ALLOWED_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern)
    for pattern in (
        r"^npx\s+\S+",
        r"^node\s+\S+",
        r"^npm\s+(run|install|test|build|start|dev)\b",
        r"^bun\s+(run|install|test|build|start|dev)\b",
        r"^pnpm\s+(run|install|test|build|start|dev)\b",
        r"^git\s+(clone|pull|push|checkout|add|commit|status|log|branch|merge|fetch|remote)\b",
        r"^cargo\s+(build|test|run|check|doc|clippy|fmt)\b",
        r"^go\s+(run|build|test|get|mod|vet|fmt)\b",
        r"^python3?\s+.*\.py\b",
        r"^make\s+",
        r"^cmake\s+",
        r"^(ba)?sh\s+",
        r"^cat\s+",
        r"^echo\s+",
        r"^sleep\s+\d+",
        r"^timeout\s+\d+\s+",
    )
)


@dataclass(frozen=True, slots=True)
class DangerousPattern:
    """Named denylist entry; the name is what a rejection reports."""

    name: str
    pattern: re.Pattern[str]

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


DANGEROUS_PATTERNS: Final[tuple[DangerousPattern, ...]] = tuple(
    DangerousPattern(name, re.compile(pattern))
    for name, pattern in (
        ("recursive delete of root", r"\brm\s+-(?:rf|fr)\s+/"),
        ("remote script piped to shell", r"\b(?:curl|wget)\s+.*\|\s*(?:ba)?sh\b"),
        ("pipe to shell", r"\|\s*(?:ba)?sh\b"),
        ("redirect to /dev/null", r">\s*/dev/null"),
        ("command substitution", r"\$\("),
        ("backtick substitution", r"`[^`]+`"),
        ("world-writable chmod", r"\bchmod\s+777\b"),
        ("setuid chmod", r"\bchmod\s+4755\b"),
    )
)

# Stripped from flag-like tokens only.
_FLAG_METACHARACTERS: Final[re.Pattern[str]] = re.compile(r"[;&|`$(){}\[\]\\]")


class CommandValidator:
    """Allow/deny gate for job commands. Instances are immutable and thread-safe."""

    def __init__(
        self,
        *,
        allowed_commands: Iterable[str] | None = None,
        allowed_patterns: Iterable[re.Pattern[str]] | None = None,
        dangerous_patterns: Iterable[DangerousPattern] | None = None,
        max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH,
    ) -> None:
        if max_command_length <= 0:
            raise ValueError("max_command_length must be > 0")
        self._allowed_commands = frozenset(
            ALLOWED_COMMANDS if allowed_commands is None else allowed_commands
        )
        self._allowed_patterns = tuple(
            ALLOWED_PATTERNS if allowed_patterns is None else allowed_patterns
        )
        self._dangerous_patterns = tuple(
            DANGEROUS_PATTERNS if dangerous_patterns is None else dangerous_patterns
        )
        self._max_command_length = max_command_length

    @property
    def max_command_length(self) -> int:
        return self._max_command_length

    def validate(self, command: str) -> ValidationResult:
        if not isinstance(command, str):
            kind = type(command).__name__
            return ValidationResult.reject(f"command must be a string, got {kind}")
        trimmed = command.strip()
        if not trimmed:
            return ValidationResult.reject("empty command")
        if len(trimmed) > self._max_command_length:
            return ValidationResult.reject(
                f"command exceeds max length of {self._max_command_length} characters"
            )

        for dangerous in self._dangerous_patterns:
            if dangerous.matches(trimmed):
                return ValidationResult.reject(f"dangerous pattern detected: {dangerous.name}")

        base_command = trimmed.split()[0]
        if base_command in self._allowed_commands:
            return ValidationResult.accept(trimmed)
        if any(pattern.search(trimmed) for pattern in self._allowed_patterns):
            return ValidationResult.accept(trimmed)
        return ValidationResult.reject(f"command not in allowlist: {base_command}")

    def is_allowed(self, command: str) -> bool:
        return self.validate(command).allowed

    def check(self, command: str) -> str:
        """Return the accepted command or raise :class:`ValidationError`."""
        result = self.validate(command)
        if not result.allowed:
            raise ValidationError(result.reason or "command rejected")
        assert result.sanitized is not None
        return result.sanitized

    @staticmethod
    def sanitize(command: str) -> str:
        """Strip shell metacharacters from flag-like tokens.

        Display aid only; the output is never executed and is not a safety
        boundary.
        """
        tokens = command.split()
        return " ".join(
            _FLAG_METACHARACTERS.sub("", token) if token.startswith("-") else token
            for token in tokens
        )


_DEFAULT_VALIDATOR: Final[CommandValidator] = CommandValidator()


def validate_command(command: str) -> ValidationResult:
    return _DEFAULT_VALIDATOR.validate(command)


def sanitize_command(command: str) -> str:
    return CommandValidator.sanitize(command)


__all__ = [
    "ALLOWED_COMMANDS",
    "ALLOWED_PATTERNS",
    "CommandValidator",
    "DANGEROUS_PATTERNS",
    "DangerousPattern",
    "sanitize_command",
    "validate_command",
]
