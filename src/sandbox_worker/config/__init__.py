"""Configuration loading and schema validation for sandbox-worker."""

from sandbox_worker.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigLayer,
    ConfigLoadError,
    collect_layers,
    dump_effective_config,
    env_name_for_path,
    load_config,
    load_config_file,
    normalize_paths,
)
from sandbox_worker.config.schema import (
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    GovernanceSettings,
    LoggingSettings,
    SecuritySettings,
    SessionSettings,
    WorkerConfig,
    WorkerSettings,
    assert_valid_config,
    default_config,
    default_config_dict,
    merge_config,
    validate_config,
)

__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG_FILE",
    "GovernanceSettings",
    "LoggingSettings",
    "PATH_FIELDS",
    "SecuritySettings",
    "SessionSettings",
    "WorkerConfig",
    "WorkerSettings",
    "assert_valid_config",
    "collect_layers",
    "default_config",
    "default_config_dict",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "load_config_file",
    "normalize_paths",
    "validate_config",
]
