"""Plugin manifest and metadata models."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Ids end up in repository URLs and plugin_dir paths
PLUGIN_ID_PATTERN = re.compile(r"[a-z0-9][a-z0-9._-]*")
VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?")


def is_valid_plugin_id(plugin_id: str) -> bool:
    """Return True for lower-case ids made of letters, digits, ``.``, ``_`` and ``-``."""
    return PLUGIN_ID_PATTERN.fullmatch(plugin_id) is not None and ".." not in plugin_id


class CodeType(StrEnum):
    """How the plugin entry point is shipped."""

    SCRIPT = "script"
    BYTECODE = "bytecode"


class HookName(StrEnum):
    """Lifecycle callbacks a plugin may implement."""

    ON_LOAD = "onLoad"
    ON_ENABLE = "onEnable"
    ON_DISABLE = "onDisable"
    ON_UNLOAD = "onUnload"
    ON_CONFIG_CHANGE = "onConfigChange"
    ON_MESSAGE = "onMessage"


class StoragePermission(BaseModel):
    """Local key/value storage grant."""

    model_config = ConfigDict(frozen=True)

    local: bool = False
    size: int | None = Field(default=None, ge=0, description="Max storage in bytes")


class PluginPermissions(BaseModel):
    """Declared permissions for a plugin.

    ``network`` and ``filesystem`` take ``True`` for unrestricted access or a
    list of allowed domains / path prefixes.
    """

    model_config = ConfigDict(frozen=True)

    network: bool | list[str] | None = None
    filesystem: bool | list[str] | None = None
    system: list[str] = Field(default_factory=list)
    plugins: list[str] = Field(default_factory=list)
    ui: bool = False
    storage: StoragePermission | None = None


_SCHEMA_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class ConfigProperty(BaseModel):
    """One entry of a plugin configuration schema."""

    model_config = ConfigDict(frozen=True)

    type: str = "string"
    description: str | None = None
    default: Any = None
    required: bool = False
    enum: list[Any] | None = None


class ConfigSchema(BaseModel):
    """Shape of the configuration a plugin accepts."""

    model_config = ConfigDict(frozen=True)

    properties: dict[str, ConfigProperty] = Field(default_factory=dict)

    def defaults(self) -> dict[str, Any]:
        """Return the default configuration declared by the schema."""
        return {
            name: prop.default for name, prop in self.properties.items() if prop.default is not None
        }

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        """Check a configuration against the schema.

        Args:
            config: Candidate configuration

        Returns:
            List of problems, empty when the configuration is valid
        """
        problems = []
        for name, prop in self.properties.items():
            if name not in config:
                if prop.required and prop.default is None:
                    problems.append(f"'{name}' is required")
                continue

            value = config[name]
            expected = _SCHEMA_TYPES.get(prop.type)
            # bool is an int subclass; keep it out of numeric fields
            is_bool_mismatch = isinstance(value, bool) and prop.type in ("number", "integer")
            if expected and (not isinstance(value, expected) or is_bool_mismatch):
                problems.append(f"'{name}' must be of type {prop.type}")
                continue

            if prop.enum is not None and value not in prop.enum:
                problems.append(f"'{name}' must be one of {prop.enum}")
        return problems


class PluginManifest(BaseModel):
    """Declarative description of a plugin. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    homepage: str | None = None
    repository: str | None = None
    main: str = "main.py"
    code_type: CodeType = Field(default=CodeType.SCRIPT, alias="codeType")
    dependencies: dict[str, str] = Field(default_factory=dict)
    permissions: PluginPermissions | None = None
    hooks: frozenset[HookName] = Field(default_factory=frozenset)
    exports: frozenset[str] = Field(default_factory=frozenset)
    config_schema: ConfigSchema | None = Field(default=None, alias="configSchema")
    signature: str | None = None

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        if not is_valid_plugin_id(value):
            raise ValueError(f"invalid plugin id: {value!r}")
        return value

    @field_validator("version")
    @classmethod
    def _semver(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("version must not be empty")
        if VERSION_PATTERN.fullmatch(value) is None:
            raise ValueError(f"version must look like MAJOR.MINOR.PATCH, got {value!r}")
        return value

    def declares_hook(self, hook: HookName | str) -> bool:
        """Return True if the manifest lists the given lifecycle hook."""
        return hook in self.hooks

    def storage_limit(self, default: int) -> int:
        """Return the storage cap in bytes, falling back to ``default``."""
        storage = self.permissions.storage if self.permissions else None
        if storage is None or storage.size is None:
            return default
        return storage.size
