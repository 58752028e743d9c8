"""Configuration models and YAML loading."""

from warden.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, save_config
from warden.config.schema import (
    MonitoringConfig,
    PermissionsConfig,
    RepositoryConfig,
    SandboxConfig,
    WardenConfig,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ConfigError",
    "MonitoringConfig",
    "PermissionsConfig",
    "RepositoryConfig",
    "SandboxConfig",
    "WardenConfig",
    "load_config",
    "save_config",
]
