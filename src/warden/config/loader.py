"""Reading and writing the warden YAML configuration."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from warden.config.schema import WardenConfig

DEFAULT_CONFIG_PATH = Path.home() / ".warden" / "warden.yaml"


class ConfigError(Exception):
    """The configuration file can't be read or doesn't validate."""

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.path = path


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", path) from e
    except OSError as e:
        raise ConfigError(f"Failed to load config from {path}: {e}", path) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}", path)
    return data


def load_config(path: Path | str | None = None) -> WardenConfig:
    """Load the runtime configuration.

    A missing or empty file yields the defaults. A relative ``plugin_dir`` is
    taken relative to the directory holding the file, so a config and its
    plugins can move together.

    Args:
        path: Config file (default: ``~/.warden/warden.yaml``)

    Raises:
        ConfigError: If the file exists but can't be parsed or validated
    """
    path = DEFAULT_CONFIG_PATH if path is None else Path(path)
    if not path.exists():
        return WardenConfig()

    data = _read_mapping(path)
    plugin_dir = data.get("plugin_dir")
    if isinstance(plugin_dir, str) and not Path(plugin_dir).expanduser().is_absolute():
        data["plugin_dir"] = str(path.parent / plugin_dir)

    try:
        return WardenConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}", path) from e


def save_config(config: WardenConfig, path: Path | str | None = None) -> None:
    """Write the configuration as YAML.

    Manifests keep their wire names (``codeType``, ``configSchema``) so the file
    loads back unchanged. The file is replaced in one step; a failed write
    leaves the previous version in place.
    """
    path = DEFAULT_CONFIG_PATH if path is None else Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    staging = path.with_name(f".{path.name}.tmp")
    with open(staging, "w") as f:
        data = config.model_dump(mode="json", by_alias=True)
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    staging.replace(path)
