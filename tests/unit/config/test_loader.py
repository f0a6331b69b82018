"""
sandbox-worker — unit tests for the config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate layered config loading: defaults, TOML file, environment, CLI overrides.

What this test file should cover
- Precedence CLI > env > file > defaults.
- Env and CLI string coercion, including failures.
- Relative session roots resolve against the config file directory.
- Missing and malformed files.
- Deterministic effective-config dumps.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sandbox_worker.config.loader import (
    ConfigLoadError,
    collect_layers,
    dump_effective_config,
    env_name_for_path,
    load_config,
    load_config_file,
    normalize_paths,
)
from sandbox_worker.config.schema import ConfigValidationError


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_env_names_follow_section_and_key() -> None:
    assert env_name_for_path(("worker", "concurrency")) == "SANDBOX_WORKER_WORKER_CONCURRENCY"
    assert env_name_for_path(("session", "root")) == "SANDBOX_WORKER_SESSION_ROOT"


def test_missing_default_file_yields_defaults() -> None:
    config = load_config(environ={})

    assert config.worker.concurrency == 4
    assert config.session.root == "/tmp/sandbox-worker/sessions"


def test_default_file_in_cwd_is_picked_up(tmp_path: Path) -> None:
    _write(tmp_path / "sandbox-worker.toml", "[worker]\nconcurrency = 7\n")

    assert load_config(environ={}).worker.concurrency == 7


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    path = _write(tmp_path / "bad.toml", "[worker\nconcurrency = \n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(path, environ={})


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "worker.toml",
        "[worker]\nconcurrency = 2\nid = 'from-file'\n\n"
        "[governance]\ndefault_timeout_ms = 1000\n",
    )
    environ = {
        "SANDBOX_WORKER_WORKER_CONCURRENCY": "3",
        "SANDBOX_WORKER_GOVERNANCE_DEFAULT_TIMEOUT_MS": "2000",
    }

    config = load_config(
        path, environ=environ, cli_overrides={"governance.default_timeout_ms": "3000"}
    )

    assert config.worker.id == "from-file"
    assert config.worker.concurrency == 3
    assert config.governance.default_timeout_ms == 3000


def test_env_values_are_coerced_by_type(tmp_path: Path) -> None:
    environ = {
        "SANDBOX_WORKER_SESSION_STRICT_TRANSITIONS": "off",
        "SANDBOX_WORKER_GOVERNANCE_MAX_CPU": "3.5",
        "SANDBOX_WORKER_LOGGING_LEVEL": "debug",
        "SANDBOX_WORKER_SESSION_ROOT": str(tmp_path / "env-root"),
    }

    config = load_config(environ=environ)

    assert config.session.strict_transitions is False
    assert config.governance.max_cpu == 3.5
    assert config.logging.level == "DEBUG"
    assert config.session.root == (tmp_path / "env-root").as_posix()


def test_unrelated_env_vars_are_ignored() -> None:
    config = load_config(environ={"SANDBOX_WORKER_NOT_A_SETTING": "x", "HOME": "/root"})

    assert config.worker.concurrency == 4


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("SANDBOX_WORKER_WORKER_CONCURRENCY", "many", "must be an integer"),
        ("SANDBOX_WORKER_GOVERNANCE_DEFAULT_CPU", "fast", "must be a number"),
        ("SANDBOX_WORKER_SECURITY_REQUIRE_COMMAND_VALIDATION", "maybe", "must be a boolean"),
    ],
)
def test_bad_env_values_fail_with_source(name: str, value: str, message: str) -> None:
    with pytest.raises(ConfigLoadError, match=message) as excinfo:
        load_config(environ={name: value})

    assert name in str(excinfo.value)


def test_cli_override_key_must_be_dotted() -> None:
    with pytest.raises(ConfigLoadError, match="expected <section>.<key>"):
        load_config(environ={}, cli_overrides={"concurrency": "2"})


def test_cli_override_values_are_validated() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(environ={}, cli_overrides={"worker.concurrency": 0, "worker.nope": "x"})

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {"worker.concurrency", "worker.nope"}


def test_relative_session_root_resolves_against_config_dir(tmp_path: Path) -> None:
    config_dir = tmp_path / "etc"
    config_dir.mkdir()
    path = _write(config_dir / "worker.toml", "[session]\nroot = '../var/sessions'\n")

    config = load_config_file(path)

    assert config.session.root == (tmp_path / "var" / "sessions").as_posix()


def test_normalize_paths_expands_user_and_vars(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("SESSION_AREA", "area")

    normalized = normalize_paths({"session": {"root": "~/$SESSION_AREA/s"}}, base_dir=Path("/x"))

    assert normalized["session"]["root"] == (tmp_path / "area" / "s").as_posix()


def test_dump_effective_config_is_sorted_compact_json() -> None:
    config = load_config(environ={}, cli_overrides={"worker.id": "w-1"})

    dumped = dump_effective_config(config)

    assert dumped == dump_effective_config(config)
    assert ", " not in dumped
    decoded = json.loads(dumped)
    assert decoded["worker"]["id"] == "w-1"
    assert list(decoded) == ["governance", "logging", "security", "session", "worker"]


def test_layers_are_reported_lowest_precedence_first(tmp_path: Path) -> None:
    path = _write(tmp_path / "worker.toml", "[worker]\nconcurrency = 2\n")

    layers = collect_layers(
        path,
        environ={"SANDBOX_WORKER_LOGGING_FORMAT": "console"},
        cli_overrides={"session.strict_transitions": "no"},
    )

    assert [layer.source for layer in layers] == [
        "defaults",
        f"file:{path.resolve()}",
        "env",
        "cli",
    ]
    assert layers[1].values == {"worker": {"concurrency": 2}}
    assert layers[2].values == {"logging": {"format": "console"}}
    assert layers[3].values == {"session": {"strict_transitions": False}}
